"""Command execution using invoke library with custom extensions."""

from __future__ import annotations

import contextlib
import os
import platform
import shlex
from pathlib import Path

from invoke import Context, Result
from invoke.exceptions import CommandTimedOut
from invoke.runners import Promise

from checkgate.core.log import logger

# Exit code recorded for a command killed by its timeout
TIMEOUT_EXIT = -1


def kill(promise: Promise) -> None:
    """Kill the subprocess behind an asynchronous invoke handle.

    invoke's own kill() sends signal.SIGKILL, which does not exist on
    Windows. There os.kill() hands the number to TerminateProcess()
    as an exit code, so the numeric value 9 works on both.
    """
    runner = promise.runner
    if platform.system() == "Windows":
        process = getattr(runner, "process", None)
        if process is None:
            return
        with contextlib.suppress(ProcessLookupError, OSError):
            os.kill(process.pid, 9)
        return

    with contextlib.suppress(ProcessLookupError, AttributeError):
        runner.kill()


def shell_command(argv: list[str]) -> str:
    """Quote an argv list into a shell command line.

    On POSIX the shell is replaced by the tool (exec), so killing the
    process on timeout or cancellation reaches the tool itself.
    """
    if platform.system() == "Windows":
        return " ".join(f'"{a}"' if " " in a else a for a in argv)
    return "exec " + shlex.join(argv)


class Runner(Context):
    """Wrapper around invoke.Context with custom command
    execution methods.

    Provides methods that don't collide with invoke's built-in
    functionality. A Runner carries its own ``cd`` stack, so
    concurrent commands each use their own instance.
    """

    def start(
        self,
        command: str,
        cwd: Path | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> Promise:
        """Start a command without waiting for it.

        Returns:
            invoke Promise; pass it to wait() or kill()
        """
        kwargs = {
            "hide": True,
            "warn": True,
            "in_stream": False,
            "asynchronous": True,
        }
        if timeout:
            kwargs["timeout"] = timeout
        if env:
            kwargs["env"] = env

        logger.spew("Starting subprocess", command=command, cwd=str(cwd))
        if cwd:
            with self.cd(str(cwd)):
                return self.run(command, **kwargs)
        return self.run(command, **kwargs)

    @staticmethod
    def wait(promise: Promise) -> tuple[Result, bool]:
        """Block until a started command finishes.

        A timeout is returned rather than raised: the result carries
        exit code -1 and the flag is True.

        Returns:
            (result, timed_out)
        """
        timed_out = False
        try:
            result = promise.join()
        except CommandTimedOut as e:
            result = e.result
            result.exited = TIMEOUT_EXIT
            timed_out = True
        logger.spew("Subprocess finished", exited=result.exited,
                    timed_out=timed_out)
        return result, timed_out

    def execute(
        self,
        command: str,
        cwd: Path | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> Result:
        """Execute a command and wait for it.

        Nonzero exits are returned, not raised.

        Args:
            command: Command string to execute
            cwd: Working directory for command execution
            timeout: Maximum execution time in seconds
            env: Environment variables to set (updates os.environ,
                does not replace it)

        Returns:
            invoke.Result with stdout, stderr, exited (return code)
        """
        result, _ = self.wait(
            self.start(command, cwd=cwd, timeout=timeout, env=env)
        )
        return result
