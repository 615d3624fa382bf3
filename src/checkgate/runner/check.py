"""Check runner with log management."""

from __future__ import annotations

import os
import shutil
import threading
import time
from collections.abc import Iterable, Mapping
from pathlib import Path

from invoke import Result
from invoke.runners import Promise
from pydantic import BaseModel, ConfigDict

from checkgate.checks.registry import CheckDefinition
from checkgate.core.errors import (
    CheckExecutionError,
    CheckFailure,
    RunCancelledError,
)
from checkgate.core.log import logger
from checkgate.core.result import CheckResult, CheckStatus
from checkgate.core.runner import Runner, kill, shell_command


class CheckContext(BaseModel):
    """Values substituted into a check's command placeholders."""

    model_config = ConfigDict(frozen=True)

    files: tuple[str, ...] = ()
    base: str = ""
    head: str = ""
    mode: str = "diff"
    cache_dir: Path | None = None


class _Placeholders(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def _placeholders(context: CheckContext, workdir: Path) -> _Placeholders:
    return _Placeholders(
        files=" ".join(context.files),
        base=context.base,
        head=context.head,
        mode=context.mode,
        workdir=str(workdir),
        cache_dir=str(context.cache_dir or ""),
    )


def render_command(
    argv: Iterable[str], context: CheckContext, workdir: Path
) -> list[str]:
    """Expand placeholders in an argv template.

    An argument that is exactly ``{files}`` becomes one argument per
    file; elsewhere {files} is the space-joined list.

    Raises:
        ValueError: On a malformed template
    """
    values = _placeholders(context, workdir)
    rendered: list[str] = []
    for arg in argv:
        if arg == "{files}":
            rendered.extend(context.files)
        else:
            rendered.append(arg.format_map(values))
    return rendered


def render_env(
    env: Mapping[str, str], context: CheckContext, workdir: Path
) -> dict[str, str]:
    """Expand placeholders in environment values.

    Raises:
        ValueError: On a malformed template
    """
    values = _placeholders(context, workdir)
    return {name: value.format_map(values) for name, value in env.items()}


def find_executable(
    name: str, cwd: Path, env: Mapping[str, str] | None = None
) -> str | None:
    """Locate argv[0] the way the shell would."""
    env = os.environ if env is None else env
    if "/" in name or os.sep in name:
        path = Path(name)
        if not path.is_absolute():
            path = cwd / path
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        return None
    return shutil.which(name, path=env.get("PATH", os.defpath))


def check_workdir(definition: CheckDefinition, workdir: Path) -> Path:
    """Directory a check runs in."""
    if definition.workdir is None:
        return Path(workdir)
    return Path(workdir) / definition.workdir


def missing_tools(
    definitions: Iterable[CheckDefinition], workdir: Path
) -> list[tuple[str, str]]:
    """(check id, executable) for every check whose command or setup
    executable cannot be found."""
    missing = []
    for definition in definitions:
        cwd = check_workdir(definition, workdir)
        env = {**os.environ, **definition.environment}
        seen = set()
        for argv in (definition.setup, definition.command,
                     definition.full_command):
            if not argv or argv[0] in seen:
                continue
            seen.add(argv[0])
            if find_executable(argv[0], cwd, env) is None:
                missing.append((definition.id, argv[0]))
    return missing


class CheckRunner:
    """Execute check commands and manage their log files.

    Safe to call from several threads at once. cancel() kills every
    subprocess this runner has in flight, including setup commands.
    """

    def __init__(self, output_dir: Path | None = None):
        """Initialize check runner.

        Args:
            output_dir: Directory for per-check logs, or None to keep
                output only in the result
        """
        self.output_dir = output_dir
        self._lock = threading.Lock()
        self._active: dict[int, Promise] = {}
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Terminate all in-flight subprocesses."""
        self._cancelled.set()
        with self._lock:
            active = list(self._active.values())
        for promise in active:
            kill(promise)
        if active:
            logger.warn(f"Killed {len(active)} running commands")

    def _log_file(self, run_id: str, group: str, name: str) -> Path | None:
        if self.output_dir is None:
            return None
        return Path(self.output_dir) / run_id / f"{group}.{name}.log"

    def _spawn(
        self,
        argv: list[str],
        cwd: Path,
        timeout: float,
        env: dict[str, str],
    ) -> tuple[Result, bool, float]:
        """Run argv to completion, tracked for cancellation.

        Returns:
            (result, timed_out, duration)

        Raises:
            RunCancelledError: If cancel() was called
            OSError: If the shell itself could not be started
        """
        if self.cancelled:
            raise RunCancelledError("Runner was cancelled")

        started = time.monotonic()
        promise = Runner().start(
            shell_command(argv), cwd=cwd, timeout=timeout, env=env
        )
        with self._lock:
            self._active[id(promise)] = promise
        # cancel() may have run between start() and registration
        if self.cancelled:
            kill(promise)
        try:
            result, timed_out = Runner.wait(promise)
        finally:
            with self._lock:
                self._active.pop(id(promise), None)

        if self.cancelled:
            raise RunCancelledError(f"'{argv[0]}' was cancelled")
        return result, timed_out, time.monotonic() - started

    def run_setup(
        self,
        definition: CheckDefinition,
        workdir: Path,
        location: Path,
        timeout: float,
    ) -> None:
        """Run a check's setup command to populate location.

        Raises:
            CheckExecutionError: Setup could not start, timed out or
                exited nonzero
            RunCancelledError: If cancel() was called
        """
        cwd = check_workdir(definition, workdir)
        context = CheckContext(cache_dir=location)
        try:
            argv = render_command(definition.setup or (), context, cwd)
            extra_env = render_env(definition.environment, context, cwd)
        except (ValueError, IndexError) as e:
            raise CheckExecutionError(
                definition.id, "invalid setup template", str(e)
            ) from e
        extra_env["CHECKGATE_CACHE_DIR"] = str(location)

        if not argv or find_executable(
            argv[0], cwd, {**os.environ, **extra_env}
        ) is None:
            raise CheckExecutionError(
                definition.id, "setup not found",
                argv[0] if argv else "empty setup",
            )

        with logger.span("Running setup", check=definition.id):
            result, timed_out, _ = self._spawn(argv, cwd, timeout, extra_env)

        if timed_out:
            raise CheckExecutionError(definition.id, "setup timeout")
        if result.exited != 0:
            tail = (result.stdout + result.stderr).strip()[-2000:]
            raise CheckExecutionError(
                definition.id, "setup failed",
                f"exit code {result.exited}: {tail}",
            )

    def run(
        self,
        definition: CheckDefinition,
        workdir: Path,
        timeout: float,
        group: str = "",
        run_id: str = "",
        context: CheckContext | None = None,
    ) -> CheckResult:
        """Run one check and classify its outcome.

        Exit code 0 is Passed, any other exit code is Failed. A
        command that cannot start, or that hits the timeout, is
        Errored.

        Raises:
            RunCancelledError: If cancel() was called
        """
        context = context or CheckContext()
        log_file = self._log_file(run_id, group, definition.id)
        common = {"check_id": definition.id, "group": group, "run_id": run_id}

        def errored(error: CheckExecutionError, **extra) -> CheckResult:
            logger.error(str(error))
            extra.setdefault("output", str(error))
            return CheckResult.errored(reason=error.reason, **common, **extra)

        cwd = check_workdir(definition, workdir)
        if not cwd.is_dir():
            return errored(CheckExecutionError(
                definition.id, "workdir missing", str(cwd)
            ))

        template = definition.command
        if context.mode == "full" and definition.full_command:
            template = definition.full_command

        try:
            argv = render_command(template, context, cwd)
            # invoke layers extra_env over os.environ
            extra_env = render_env(definition.environment, context, cwd)
        except (ValueError, IndexError) as e:
            return errored(CheckExecutionError(
                definition.id, "invalid command template", str(e)
            ))
        if context.cache_dir is not None:
            extra_env["CHECKGATE_CACHE_DIR"] = str(context.cache_dir)

        if find_executable(argv[0], cwd, {**os.environ, **extra_env}) is None:
            return errored(CheckExecutionError(
                definition.id, "not found", argv[0]
            ))

        with logger.span("Running check", check=definition.id, group=group):
            try:
                result, timed_out, duration = self._spawn(
                    argv, cwd, timeout, extra_env
                )
            except OSError as e:
                return errored(CheckExecutionError(
                    definition.id, "not started", str(e)
                ))

        output = result.stdout + result.stderr
        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_file.write_text(output, encoding="utf-8")

        exit_code = result.exited
        if timed_out:
            return errored(
                CheckExecutionError(
                    definition.id, "timeout", f"after {timeout}s"
                ),
                output=output, duration=duration,
                exit_code=exit_code, log_file=log_file,
            )

        if exit_code == 0:
            status = CheckStatus.PASSED
            logger.info(f"Check '{definition.id}' passed",
                        duration=round(duration, 3))
        else:
            status = CheckStatus.FAILED
            logger.warn(str(CheckFailure(definition.id, exit_code)),
                        log_file=str(log_file) if log_file else None)

        return CheckResult(
            status=status,
            exit_code=exit_code,
            output=output,
            duration=duration,
            log_file=log_file,
            **common,
        )


__all__ = [
    "CheckContext",
    "CheckRunner",
    "render_command",
    "render_env",
    "find_executable",
    "check_workdir",
    "missing_tools",
]
