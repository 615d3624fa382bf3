"""Human and machine readable summary of a gate run."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from checkgate.core.result import (
    CheckResult,
    CheckStatus,
    GateDecision,
    GateStatus,
)
from checkgate.workflow.plan import ExecutionPlan

# Lines of failing output quoted in the text report
OUTPUT_TAIL = 20

_MARKS = {
    CheckStatus.PASSED: "ok",
    CheckStatus.FAILED: "FAIL",
    CheckStatus.ERRORED: "ERROR",
    CheckStatus.SKIPPED: "skip",
}


class CheckReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: CheckStatus
    exit_code: int | None = None
    duration: float = 0.0
    reason: str | None = None
    log_file: Path | None = None
    output: str = Field(
        default="",
        description="Captured output, kept only for blocking results",
    )

    @classmethod
    def from_result(cls, result: CheckResult) -> CheckReport:
        return cls(
            id=result.check_id,
            status=result.status,
            exit_code=result.exit_code,
            duration=round(result.duration, 3),
            reason=result.reason,
            log_file=result.log_file,
            output=result.output if result.status.blocking else "",
        )


class GroupReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: CheckStatus
    checks: list[CheckReport] = Field(default_factory=list)


class GateReport(BaseModel):
    """Summary of one decided gate run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    status: GateStatus
    mode: str
    base: str | None = None
    head: str | None = None
    reason: str | None = Field(
        default=None,
        description="Why a full scan was used",
    )
    changed_paths: int = 0
    groups: list[GroupReport] = Field(default_factory=list)

    @classmethod
    def build(cls, plan: ExecutionPlan, decision: GateDecision) -> GateReport:
        change_set = plan.change_set
        return cls(
            run_id=decision.run_id,
            status=decision.status,
            mode=change_set.mode.kind,
            base=change_set.base,
            head=change_set.head,
            reason=change_set.mode.reason if change_set.full_scan else None,
            changed_paths=len(change_set.paths),
            groups=[
                GroupReport(
                    name=group.name,
                    status=group.status,
                    checks=[CheckReport.from_result(r) for r in group.results],
                )
                for group in decision.groups
            ],
        )

    @property
    def passed(self) -> bool:
        return self.status is GateStatus.PASS

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def statuses(self) -> dict[str, dict[str, CheckStatus]]:
        """group → check id → status."""
        return {
            group.name: {c.id: c.status for c in group.checks}
            for group in self.groups
        }

    def render_text(self) -> str:
        """Plain text report for terminals and CI logs."""
        if self.mode == "full":
            scope = f"full scan ({self.reason})"
        else:
            scope = f"{self.base}...{self.head}, {self.changed_paths} changed"
        lines = [f"Gate run {self.run_id}: {scope}", ""]

        for group in self.groups:
            lines.append(f"[{_MARKS[group.status]}] {group.name}")
            for check in group.checks:
                line = f"    [{_MARKS[check.status]}] {check.id}"
                if check.status in (CheckStatus.SKIPPED, CheckStatus.ERRORED):
                    line += f" ({check.reason})"
                elif check.status is CheckStatus.FAILED:
                    line += f" (exit code {check.exit_code})"
                if check.status is not CheckStatus.SKIPPED:
                    line += f" {check.duration:.1f}s"
                lines.append(line)
                if check.status.blocking:
                    tail = check.output.rstrip().splitlines()[-OUTPUT_TAIL:]
                    lines.extend(f"        | {text}" for text in tail)
                    if check.log_file:
                        lines.append(f"        log: {check.log_file}")

        counts = {status: 0 for status in CheckStatus}
        for group in self.groups:
            for check in group.checks:
                counts[check.status] += 1
        summary = ", ".join(
            f"{n} {status.value}" for status, n in counts.items() if n
        )
        lines.append("")
        lines.append(f"Gate {self.status.value.upper()}: {summary or 'no checks'}")
        return "\n".join(lines)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    def write_json(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding="utf-8")


__all__ = ["CheckReport", "GroupReport", "GateReport"]
