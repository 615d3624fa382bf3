"""Exception taxonomy for gate runs.

Only ConfigError (and its registry subclasses) aborts a run. Every
other error is captured per check and folded into the report.
"""

from __future__ import annotations


class CheckgateError(Exception):
    """Base class for all checkgate errors."""


class ConfigError(CheckgateError):
    """Bad or missing registry/config entries. Fatal before any
    check runs."""


class DuplicateIdError(ConfigError):
    """A check id was registered twice."""

    def __init__(self, check_id: str):
        super().__init__(f"Check '{check_id}' is already registered")
        self.check_id = check_id


class NotFoundError(ConfigError, KeyError):
    """A check id is not present in the registry."""

    def __init__(self, check_id: str):
        super().__init__(f"Check '{check_id}' is not registered")
        self.check_id = check_id

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class RegistrySealedError(ConfigError):
    """Registration attempted after the load phase ended."""


class ResolutionError(CheckgateError):
    """A base or head revision could not be resolved."""

    def __init__(self, ref: str, message: str | None = None):
        super().__init__(message or f"Cannot resolve revision '{ref}'")
        self.ref = ref


class CheckExecutionError(CheckgateError):
    """A check subprocess failed to start or timed out."""

    def __init__(self, check_id: str, reason: str, detail: str = ""):
        text = f"Check '{check_id}' could not execute: {reason}"
        if detail:
            text = f"{text} ({detail})"
        super().__init__(text)
        self.check_id = check_id
        self.reason = reason
        self.detail = detail


class CheckFailure(CheckgateError):
    """A check exited with a nonzero status."""

    def __init__(self, check_id: str, exit_code: int):
        super().__init__(
            f"Check '{check_id}' failed with exit code {exit_code}"
        )
        self.check_id = check_id
        self.exit_code = exit_code


class CacheBuildError(CheckgateError):
    """Environment builder for a cache key failed."""

    def __init__(self, key: str, cause: BaseException | None = None):
        message = f"Cache build failed for key '{key}'"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.key = key


class AggregationError(CheckgateError):
    """Gate aggregator received an invalid transition or result."""


class RunCancelledError(CheckgateError):
    """A gate run was cancelled before a decision was published."""


__all__ = [
    "CheckgateError",
    "ConfigError",
    "DuplicateIdError",
    "NotFoundError",
    "RegistrySealedError",
    "ResolutionError",
    "CheckExecutionError",
    "CheckFailure",
    "CacheBuildError",
    "AggregationError",
    "RunCancelledError",
]
