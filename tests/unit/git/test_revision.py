"""Tests for GitRevisionSource against real repositories."""

import pytest

from checkgate.core.errors import ConfigError
from checkgate.git.revision import GitCommandError, GitRevisionSource
from checkgate.select.changes import ChangeSelector


@pytest.fixture
def templates(git_templates):
    return git_templates


def test_missing_templates_rejected(tmp_path):
    with pytest.raises(ConfigError, match="diff_names"):
        GitRevisionSource(tmp_path, {"fetch": "git fetch"})


def test_branch_lookup(git_repo, templates):
    source = GitRevisionSource(git_repo, templates)

    assert source.has_local_branch("main")
    assert source.has_local_branch("feature")
    assert not source.has_local_branch("develop")
    assert not source.has_remote_branch("main", "origin")


def test_rev_parse(git_repo, templates):
    source = GitRevisionSource(git_repo, templates)

    assert len(source.rev_parse("HEAD")) == 40
    assert source.rev_parse("no-such-ref") is None


def test_changed_paths(git_repo, templates, commit):
    commit(git_repo, {"docs/guide.md": "guide\n", "app.py": "print(2)\n"})
    source = GitRevisionSource(git_repo, templates)

    assert sorted(source.changed_paths("main", "HEAD")) == [
        "app.py", "docs/guide.md",
    ]


def test_changed_paths_excludes_deletions(git_repo, templates, commit):
    (git_repo / "README.md").unlink()
    commit(git_repo, {"new.txt": "x\n"})
    source = GitRevisionSource(git_repo, templates)

    assert source.changed_paths("main", "HEAD") == ["new.txt"]


def test_changed_paths_unknown_base(git_repo, templates):
    source = GitRevisionSource(git_repo, templates)

    with pytest.raises(GitCommandError):
        source.changed_paths("nope", "HEAD")


def test_paths_with_spaces(git_repo, templates, commit):
    commit(git_repo, {"dir name/file one.md": "x\n"})
    source = GitRevisionSource(git_repo, templates)

    assert source.changed_paths("main", "HEAD") == ["dir name/file one.md"]


def test_tracked_files(git_repo, templates):
    source = GitRevisionSource(git_repo, templates)

    assert sorted(source.tracked_files()) == ["README.md", "app.py"]


def test_fetch_without_remote_reports_failure(git_repo, templates):
    source = GitRevisionSource(git_repo, templates)

    assert source.fetch("main", "origin") is False


def test_selector_on_real_repo(git_repo, templates, commit):
    commit(git_repo, {"README.md": "# changed\n"})
    selector = ChangeSelector(GitRevisionSource(git_repo, templates))

    change_set = selector.select("main", "HEAD")
    assert change_set.paths == ("README.md",)

    fallback = selector.select("release", "HEAD")
    assert fallback.full_scan
    assert fallback.paths == ("README.md", "app.py")
