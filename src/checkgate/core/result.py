"""Result types for check execution and gate decisions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class CheckStatus(str, Enum):
    """Outcome of a single check."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERRORED = "errored"

    @property
    def blocking(self) -> bool:
        """Whether this status fails the gate."""
        return self in (CheckStatus.FAILED, CheckStatus.ERRORED)


class GateStatus(str, Enum):
    """Overall gate outcome."""

    PASS = "pass"
    FAIL = "fail"


class CheckResult(BaseModel):
    """Result of a check execution."""

    model_config = ConfigDict(frozen=True)

    check_id: str
    group: str
    run_id: str
    status: CheckStatus
    exit_code: int | None = None
    output: str = ""
    duration: float = 0.0
    reason: str | None = Field(
        default=None,
        description="Skip reason or error indicator (e.g. 'timeout')",
    )
    log_file: Path | None = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def skipped(
        cls, check_id: str, group: str, run_id: str, reason: str
    ) -> CheckResult:
        """Build a Skipped result for an inapplicable check."""
        return cls(
            check_id=check_id,
            group=group,
            run_id=run_id,
            status=CheckStatus.SKIPPED,
            reason=reason,
        )

    @classmethod
    def errored(
        cls,
        check_id: str,
        group: str,
        run_id: str,
        reason: str,
        output: str = "",
        duration: float = 0.0,
        exit_code: int | None = None,
        log_file: Path | None = None,
    ) -> CheckResult:
        """Build an Errored result (start failure, timeout, cache
        build failure)."""
        return cls(
            check_id=check_id,
            group=group,
            run_id=run_id,
            status=CheckStatus.ERRORED,
            reason=reason,
            output=output,
            duration=duration,
            exit_code=exit_code,
            log_file=log_file,
        )


class GroupOutcome(BaseModel):
    """Aggregated status of one check group."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: CheckStatus
    results: tuple[CheckResult, ...] = ()


class GateDecision(BaseModel):
    """Terminal pass/fail decision for one gate run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    status: GateStatus
    groups: tuple[GroupOutcome, ...] = ()
    decided_at: datetime = Field(default_factory=datetime.now)

    @property
    def passed(self) -> bool:
        return self.status is GateStatus.PASS

    @property
    def exit_code(self) -> int:
        """Process exit code mirroring the decision."""
        return 0 if self.passed else 1

    @property
    def results(self) -> list[CheckResult]:
        return [r for group in self.groups for r in group.results]

    def statuses(self) -> dict[str, dict[str, CheckStatus]]:
        """group → check id → status, without timing fields."""
        return {
            group.name: {r.check_id: r.status for r in group.results}
            for group in self.groups
        }


__all__ = [
    "CheckStatus",
    "GateStatus",
    "CheckResult",
    "GroupOutcome",
    "GateDecision",
]
