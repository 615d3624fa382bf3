"""End-to-end gate runs against real git repositories."""

import asyncio
import threading
import time

import pytest

from checkgate.cache.store import CacheStore
from checkgate.checks.registry import CheckDefinition, CheckRegistry
from checkgate.core.config import GroupConfig
from checkgate.core.errors import ConfigError, ResolutionError, RunCancelledError
from checkgate.core.result import CheckStatus, GateStatus
from checkgate.git.revision import GitRevisionSource
from checkgate.select.changes import ChangeSelector
from checkgate.workflow.orchestrator import Orchestrator, RunScopes

PASSED = CheckStatus.PASSED
FAILED = CheckStatus.FAILED
SKIPPED = CheckStatus.SKIPPED
ERRORED = CheckStatus.ERRORED


def definition(check_id, command, **kwargs):
    return CheckDefinition(id=check_id, command=command, **kwargs)


@pytest.fixture
def make_orchestrator(git_repo, git_templates, tmp_path):
    """Build an orchestrator over git_repo from check definitions."""

    def make(checks, groups=None, fallback="full_scan", **kwargs):
        registry = CheckRegistry.from_config(checks, groups or [])
        selector = ChangeSelector(
            GitRevisionSource(git_repo, git_templates), fallback=fallback
        )
        kwargs.setdefault("cache", CacheStore(tmp_path / "cache"))
        kwargs.setdefault("output_dir", tmp_path / "runs")
        kwargs.setdefault("timeout", 30)
        return Orchestrator(
            registry, selector, groups=groups or [], workdir=git_repo,
            **kwargs,
        )

    return make


def docs_and_python(docs_command=("true",)):
    return [
        definition("A", list(docs_command), paths=["*.md"]),
        definition("B", ["true"], paths=["*.py"]),
    ]


GROUPS = [GroupConfig(name="quality", checks=["A", "B"])]


def test_readme_change_runs_only_docs_check(make_orchestrator, git_repo, commit):
    commit(git_repo, {"README.md": "# changed\n"})
    orchestrator = make_orchestrator(docs_and_python(), GROUPS)

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {"quality": {"A": PASSED, "B": SKIPPED}}
    assert report.status is GateStatus.PASS
    assert report.exit_code == 0
    assert report.mode == "diff"
    assert report.changed_paths == 1


def test_failing_check_fails_gate(make_orchestrator, git_repo, commit):
    commit(git_repo, {"README.md": "# changed\n"})
    orchestrator = make_orchestrator(
        docs_and_python(["sh", "-c", "echo broken link; exit 2"]), GROUPS
    )

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {"quality": {"A": FAILED, "B": SKIPPED}}
    assert report.status is GateStatus.FAIL
    assert report.exit_code == 1
    failed = report.groups[0].checks[0]
    assert failed.exit_code == 2
    assert "broken link" in failed.output


def test_unresolvable_base_scans_everything(make_orchestrator, git_repo, commit):
    commit(git_repo, {"README.md": "# changed\n"})
    orchestrator = make_orchestrator(docs_and_python(), GROUPS)

    report = asyncio.run(orchestrator.run("release/9.9", "HEAD"))

    assert report.mode == "full"
    assert "release/9.9" in report.reason
    assert report.statuses() == {"quality": {"A": PASSED, "B": PASSED}}


def test_unresolvable_base_with_error_policy(make_orchestrator):
    orchestrator = make_orchestrator(docs_and_python(), GROUPS, fallback="error")

    with pytest.raises(ResolutionError):
        asyncio.run(orchestrator.run("release/9.9", "HEAD"))


def test_no_base_scans_everything(make_orchestrator):
    orchestrator = make_orchestrator(docs_and_python(), GROUPS)

    report = asyncio.run(orchestrator.run(None, "HEAD"))

    assert report.mode == "full"
    assert report.statuses() == {"quality": {"A": PASSED, "B": PASSED}}


def test_empty_diff_skips_everything_and_passes(make_orchestrator):
    orchestrator = make_orchestrator(
        [*docs_and_python(), definition("C", ["false"])], GROUPS + [
            GroupConfig(name="other", checks=["C"]),
        ],
    )

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {
        "quality": {"A": SKIPPED, "B": SKIPPED},
        "other": {"C": SKIPPED},
    }
    assert report.status is GateStatus.PASS
    assert report.groups[0].checks[0].reason == "no matching changes"


def test_unknown_head_scans_everything(make_orchestrator):
    orchestrator = make_orchestrator(docs_and_python(), GROUPS)

    report = asyncio.run(orchestrator.run("main", "no-such-commit"))

    assert report.mode == "full"
    assert "no-such-commit" in report.reason
    assert report.statuses() == {"quality": {"A": PASSED, "B": PASSED}}


def test_rerun_is_idempotent(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"README.md": "# changed\n", "app.py": "print(3)\n"})
    (git_repo / "uv.lock").write_text("pinned\n")
    builds = tmp_path / "builds.txt"
    checks = [
        definition("A", ["true"], paths=["*.md"]),
        definition("B", ["sh", "-c", "exit 1"], paths=["*.py"],
                   setup=["sh", "-c", f"echo built >> {builds}"],
                   cache_inputs=["uv.lock"]),
    ]
    orchestrator = make_orchestrator(checks, GROUPS)

    first = asyncio.run(orchestrator.run("main", "HEAD"))
    second = asyncio.run(orchestrator.run("main", "HEAD"))

    assert first.run_id != second.run_id
    assert first.statuses() == second.statuses() == {
        "quality": {"A": PASSED, "B": FAILED},
    }
    # Second run reused the cached environment
    assert builds.read_text().count("built") == 1


def test_shared_setup_builds_once(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"app.py": "print(3)\n"})
    builds = tmp_path / "builds.txt"
    setup = ["sh", "-c", f"sleep 0.3; echo built >> {builds}"]
    checks = [
        definition(f"lint{i}", ["sh", "-c", "true"], paths=["*.py"],
                   setup=setup)
        for i in range(4)
    ]
    groups = [GroupConfig(name="backend", checks=[c.id for c in checks])]
    orchestrator = make_orchestrator(checks, groups, concurrency=4)

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.passed
    assert builds.read_text().count("built") == 1


def test_cache_build_failure_errors_only_dependents(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [
        definition("needs-env", ["true"], paths=["*.py"],
                   setup=["sh", "-c", "exit 7"]),
        definition("plain", ["true"], paths=["*.py"]),
    ]
    groups = [GroupConfig(name="backend", checks=["needs-env", "plain"])]
    orchestrator = make_orchestrator(checks, groups)

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {
        "backend": {"needs-env": ERRORED, "plain": PASSED},
    }
    assert report.groups[0].checks[0].reason == "cache build failed"
    assert report.status is GateStatus.FAIL


def test_setup_without_cache_store(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [definition(
        "env", ["sh", "-c", 'test -f "$CHECKGATE_CACHE_DIR/ready"'],
        paths=["*.py"],
        setup=["sh", "-c", 'touch "$CHECKGATE_CACHE_DIR/ready"'],
    )]
    orchestrator = make_orchestrator(
        checks, [GroupConfig(name="g", checks=["env"])], cache=None
    )

    assert asyncio.run(orchestrator.run("main", "HEAD")).passed


def test_missing_tool_is_errored(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [definition("ghost", ["no-such-linter-xyz"], paths=["*.py"])]
    orchestrator = make_orchestrator(checks, [GroupConfig(name="g", checks=["ghost"])])

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {"g": {"ghost": ERRORED}}
    assert report.groups[0].checks[0].reason == "not found"


def test_strict_tools_rejects_missing_tool(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"app.py": "print(3)\n"})
    marker = tmp_path / "ran"
    checks = [
        definition("first", ["sh", "-c", f"touch {marker}"], paths=["*.py"]),
        definition("ghost", ["no-such-linter-xyz"], paths=["*.py"]),
    ]
    orchestrator = make_orchestrator(
        checks, [GroupConfig(name="g", checks=["first", "ghost"])],
        strict_tools=True,
    )

    with pytest.raises(ConfigError, match="no-such-linter-xyz"):
        asyncio.run(orchestrator.run("main", "HEAD"))
    assert not marker.exists()


def test_default_groups_by_category(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [
        definition("bandit", ["true"], category="security"),
        definition("ruff", ["true"], category="backend_lint", paths=["*.py"]),
        definition("secrets", ["true"], category="security"),
    ]
    orchestrator = make_orchestrator(checks)

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {
        "security": {"bandit": PASSED, "secrets": PASSED},
        "backend_lint": {"ruff": PASSED},
    }


def test_group_skip_and_mutual_exclusion(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [
        definition("ruff", ["true"], paths=["*.py"]),
        definition("flake8", ["false"], paths=["*.py"], excludes=["ruff"]),
        definition("mypy", ["false"], paths=["*.py"]),
    ]
    groups = [GroupConfig(name="py", checks=["flake8", "mypy", "ruff"],
                          skip=["mypy"])]
    orchestrator = make_orchestrator(checks, groups)

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    checks_by_id = {c.id: c for c in report.groups[0].checks}
    # Registry order, not group listing order
    assert list(checks_by_id) == ["ruff", "flake8", "mypy"]
    assert checks_by_id["ruff"].status is PASSED
    assert checks_by_id["flake8"].status is SKIPPED
    assert checks_by_id["flake8"].reason == "excluded by ruff"
    assert checks_by_id["mypy"].reason == "skipped by group"
    assert report.passed


def test_check_in_two_groups(make_orchestrator, git_repo, commit):
    commit(git_repo, {"README.md": "# changed\n"})
    orchestrator = make_orchestrator(docs_and_python(), [
        GroupConfig(name="one", checks=["A"]),
        GroupConfig(name="two", checks=["A", "B"]),
    ])

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {
        "one": {"A": PASSED},
        "two": {"A": PASSED, "B": SKIPPED},
    }


def test_timeout_errors_check(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [definition("slow", ["sleep", "20"], timeout=1)]
    orchestrator = make_orchestrator(checks, [GroupConfig(name="g", checks=["slow"])])

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {"g": {"slow": ERRORED}}
    assert report.groups[0].checks[0].reason == "timeout"


def test_files_placeholder_receives_matched_paths(make_orchestrator, git_repo, commit):
    commit(git_repo, {"docs/a.md": "a\n", "docs/b.md": "b\n", "x.py": "x\n"})
    checks = [definition(
        "list", ["sh", "-c", 'for f in "$@"; do echo "$f"; done', "sh", "{files}"],
        paths=["*.md"],
    )]
    orchestrator = make_orchestrator(checks, [GroupConfig(name="g", checks=["list"])])

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    log_file = report.groups[0].checks[0].log_file
    assert log_file.read_text().splitlines() == ["docs/a.md", "docs/b.md"]


def test_plan_does_not_execute(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"README.md": "# changed\n"})
    marker = tmp_path / "ran"
    checks = [
        definition("A", ["sh", "-c", f"touch {marker}"], paths=["*.md"]),
        definition("B", ["true"], paths=["*.py"]),
    ]
    orchestrator = make_orchestrator(checks, GROUPS)

    plan = orchestrator.plan("main", "HEAD")

    assert [c.check_id for c in plan.runnable] == ["A"]
    assert plan.group("quality").checks[1].reason == "no matching changes"
    assert not marker.exists()


def test_cancel_stops_run_without_decision(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [definition(f"slow{i}", ["sleep", "30"]) for i in range(3)]
    orchestrator = make_orchestrator(
        checks, [GroupConfig(name="g", checks=[c.id for c in checks])]
    )
    timer = threading.Timer(1.0, orchestrator.cancel)

    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(RunCancelledError):
            asyncio.run(orchestrator.run("main", "HEAD"))
    finally:
        timer.cancel()

    assert time.monotonic() - started < 20


def test_newer_run_supersedes_older_in_same_scope(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    scopes = RunScopes()
    slow = make_orchestrator(
        [definition("slow", ["sleep", "30"])],
        [GroupConfig(name="g", checks=["slow"])],
        scopes=scopes,
    )
    fast = make_orchestrator(
        [definition("fast", ["true"])],
        [GroupConfig(name="g", checks=["fast"])],
        scopes=scopes,
    )

    async def scenario():
        older = asyncio.create_task(slow.run("main", "HEAD", scope="pr-1"))
        await asyncio.sleep(1.0)
        newer = await fast.run("main", "HEAD", scope="pr-1")
        with pytest.raises(RunCancelledError):
            await older
        return newer

    started = time.monotonic()
    newer = asyncio.run(scenario())

    assert newer.passed
    assert time.monotonic() - started < 20
    assert scopes.holder("pr-1") is None


def test_prunes_cache_after_run(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [
        definition(f"c{i}", ["true"], setup=["sh", "-c", f"echo {i}"])
        for i in range(3)
    ]
    cache = CacheStore(tmp_path / "pruned")
    orchestrator = make_orchestrator(
        checks, [GroupConfig(name="g", checks=[c.id for c in checks])],
        cache=cache, max_cache_entries=1,
    )

    asyncio.run(orchestrator.run("main", "HEAD"))

    assert len(cache.entries()) == 1


def test_unusable_cache_root_errors_only_dependents(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"app.py": "print(3)\n"})
    root = tmp_path / "cache-is-a-file"
    root.write_text("")
    checks = [
        definition("withsetup", ["true"], setup=["true"]),
        definition("plain", ["true"]),
    ]
    orchestrator = make_orchestrator(
        checks, [GroupConfig(name="g", checks=["withsetup", "plain"])],
        cache=CacheStore(root),
    )

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.statuses() == {"g": {"withsetup": ERRORED, "plain": PASSED}}
    assert report.groups[0].checks[0].reason == "cache build failed"


def test_task_cancellation_kills_subprocesses(make_orchestrator, git_repo, commit):
    commit(git_repo, {"app.py": "print(3)\n"})
    checks = [definition("slow", ["sleep", "30"])]
    orchestrator = make_orchestrator(checks, [GroupConfig(name="g", checks=["slow"])])

    async def scenario():
        task = asyncio.create_task(orchestrator.run("main", "HEAD"))
        await asyncio.sleep(1.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    started = time.monotonic()
    # asyncio.run waits for the worker thread, which ends only once
    # its subprocess is gone
    asyncio.run(scenario())

    assert time.monotonic() - started < 10


def overlap_checks(directory, count):
    """Checks that record how many of them are running at once."""
    script = (
        'touch "$D/run.$1"; ls "$D" | grep -c "^run\\." >> "$D/counts"; '
        'sleep 1; rm "$D/run.$1"'
    )
    return [
        definition(f"c{i}", ["sh", "-c", script, "sh", str(i)],
                   env={"D": str(directory)})
        for i in range(count)
    ]


def max_overlap(directory):
    return max(int(n) for n in (directory / "counts").read_text().split())


def test_concurrency_limit_bounds_running_checks(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"app.py": "print(3)\n"})
    directory = tmp_path / "overlap"
    directory.mkdir()
    checks = overlap_checks(directory, 4)
    groups = [
        GroupConfig(name="one", checks=["c0", "c1"]),
        GroupConfig(name="two", checks=["c2", "c3"]),
    ]
    orchestrator = make_orchestrator(checks, groups, concurrency=2)

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.passed
    assert max_overlap(directory) == 2


def test_groups_run_concurrently(make_orchestrator, git_repo, commit, tmp_path):
    commit(git_repo, {"app.py": "print(3)\n"})
    directory = tmp_path / "overlap"
    directory.mkdir()
    checks = overlap_checks(directory, 2)
    groups = [
        GroupConfig(name="one", checks=["c0"]),
        GroupConfig(name="two", checks=["c1"]),
    ]
    orchestrator = make_orchestrator(checks, groups, concurrency=4)

    report = asyncio.run(orchestrator.run("main", "HEAD"))

    assert report.passed
    assert max_overlap(directory) == 2


def test_full_command_runs_in_full_scan(make_orchestrator):
    checks = [definition(
        "hooks", ["echo", "changed", "{files}"],
        full_command=["echo", "all-files"],
    )]
    orchestrator = make_orchestrator(checks, [GroupConfig(name="g", checks=["hooks"])])

    report = asyncio.run(orchestrator.run(None, "HEAD"))

    log_file = report.groups[0].checks[0].log_file
    assert log_file.read_text().strip() == "all-files"
