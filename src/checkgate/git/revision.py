"""Revision queries against a git working tree.

All git invocations come from the ``commands.git`` templates in the
configuration and run through Runner, so they can be adjusted
without code changes.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Protocol

from checkgate.core.errors import ConfigError
from checkgate.core.log import logger
from checkgate.core.runner import Runner

REQUIRED_TEMPLATES = (
    "fetch",
    "show_ref_local",
    "show_ref_remote",
    "rev_parse",
    "diff_names",
    "ls_files",
)


class RevisionSource(Protocol):
    """What the change selector needs from version control."""

    def fetch(self, ref: str, remote: str) -> bool: ...

    def has_local_branch(self, ref: str) -> bool: ...

    def has_remote_branch(self, ref: str, remote: str) -> bool: ...

    def rev_parse(self, ref: str) -> str | None: ...

    def changed_paths(self, base: str, head: str) -> list[str]: ...

    def tracked_files(self) -> list[str]: ...


class GitCommandError(RuntimeError):
    """A git query exited nonzero where output was required."""


class GitRevisionSource:
    """RevisionSource backed by git command templates."""

    def __init__(self, workdir: Path, templates: dict[str, str],
                 timeout: float = 120):
        missing = [t for t in REQUIRED_TEMPLATES if t not in templates]
        if missing:
            raise ConfigError(
                f"Missing git command templates: {', '.join(missing)}"
            )
        self.workdir = Path(workdir)
        self.templates = templates
        self.timeout = timeout

    def _run(self, name: str, **values: str):
        quoted = {k: shlex.quote(v) for k, v in values.items()}
        command = self.templates[name].format(**quoted)
        logger.trace("git query", template=name, command=command)
        return Runner().execute(
            command, cwd=self.workdir, timeout=self.timeout
        )

    @staticmethod
    def _split(output: str) -> list[str]:
        # -z output is NUL separated; tolerate newline templates too
        sep = "\0" if "\0" in output else "\n"
        return [p for p in output.split(sep) if p.strip()]

    def fetch(self, ref: str, remote: str) -> bool:
        result = self._run("fetch", ref=ref, remote=remote)
        if result.exited != 0:
            logger.warn(
                "Could not fetch base branch",
                ref=ref,
                remote=remote,
                stderr=result.stderr.strip(),
            )
        return result.exited == 0

    def has_local_branch(self, ref: str) -> bool:
        return self._run("show_ref_local", ref=ref).exited == 0

    def has_remote_branch(self, ref: str, remote: str) -> bool:
        return self._run("show_ref_remote", ref=ref, remote=remote).exited == 0

    def rev_parse(self, ref: str) -> str | None:
        result = self._run("rev_parse", ref=ref)
        if result.exited != 0:
            return None
        return result.stdout.strip() or None

    def changed_paths(self, base: str, head: str) -> list[str]:
        result = self._run("diff_names", base=base, head=head)
        if result.exited != 0:
            raise GitCommandError(
                f"git diff {base}...{head} failed: {result.stderr.strip()}"
            )
        return self._split(result.stdout)

    def tracked_files(self) -> list[str]:
        result = self._run("ls_files")
        if result.exited != 0:
            raise GitCommandError(
                f"git ls-files failed: {result.stderr.strip()}"
            )
        return self._split(result.stdout)
