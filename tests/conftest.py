"""Pytest configuration and fixtures for checkgate tests."""

import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from checkgate.core.log import ConsoleSink, setup_logger


@pytest.fixture(autouse=True, scope="session")
def configure_logging():
    """Configure logging for console-only mode during tests.

    This enables debug output during test runs without requiring
    authentication or sending logs to logfire.dev.
    """
    test_log_root = Path(tempfile.gettempdir()) / "checkgate-tests"
    setup_logger(
        log_root=test_log_root,
        run_name="test",
        console=ConsoleSink(level="debug"),
    )


@pytest.fixture
def mock_argv():
    """Save and restore sys.argv."""
    original = sys.argv.copy()
    sys.argv = ["checkgate"]
    yield
    sys.argv = original


def git(repo: Path, *args: str) -> str:
    """Run git in repo and return stdout."""
    return subprocess.run(
        ["git", *args], cwd=repo, check=True,
        capture_output=True, text=True,
    ).stdout


@pytest.fixture
def git_repo(tmp_path):
    """A repository with one commit on main and a feature branch
    checked out."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "--quiet", "--initial-branch=main")
    git(repo, "config", "user.email", "tests@example.com")
    git(repo, "config", "user.name", "Tests")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# project\n")
    (repo / "app.py").write_text("print('hello')\n")
    git(repo, "add", ".")
    git(repo, "commit", "--quiet", "-m", "initial")
    git(repo, "checkout", "--quiet", "-b", "feature")
    return repo


def _commit(repo: Path, files: dict[str, str], message: str = "change"):
    for name, content in files.items():
        path = repo / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    git(repo, "add", ".")
    git(repo, "commit", "--quiet", "--allow-empty", "-m", message)


@pytest.fixture
def commit():
    """Write files and commit them on the current branch."""
    return _commit


@pytest.fixture
def git_templates():
    """The packaged git command templates."""
    import yaml

    from checkgate.core.yaml_settings import DEFAULTS_FILE

    data = yaml.safe_load(DEFAULTS_FILE.read_text())
    return data["config"]["commands"]["git"]
