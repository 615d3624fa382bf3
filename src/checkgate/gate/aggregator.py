"""Gate aggregation: per-run collection of check results."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from enum import Enum

from checkgate.core.errors import AggregationError
from checkgate.core.log import logger
from checkgate.core.result import (
    CheckResult,
    CheckStatus,
    GateDecision,
    GateStatus,
    GroupOutcome,
)


class Phase(str, Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    DECIDED = "decided"
    ABORTED = "aborted"


def group_status(results: Iterable[CheckResult]) -> CheckStatus:
    """Collapse a group's results into one status.

    Any Errored result wins over Failed, which wins over Passed. A
    group where nothing ran is Skipped, never Failed.
    """
    statuses = {r.status for r in results}
    for status in (CheckStatus.ERRORED, CheckStatus.FAILED,
                   CheckStatus.PASSED):
        if status in statuses:
            return status
    return CheckStatus.SKIPPED


def decide(results: Iterable[CheckResult]) -> GateStatus:
    """Fail iff any result is Failed or Errored."""
    if any(r.status.blocking for r in results):
        return GateStatus.FAIL
    return GateStatus.PASS


class GateAggregator:
    """Collects results for one run and produces its decision.

    PENDING → COLLECTING → DECIDED, or ABORTED from either earlier
    phase. Results may arrive in any order and from any thread; the
    decision does not depend on arrival order.
    """

    def __init__(self, run_id: str, groups: Iterable[str] = ()):
        self.run_id = run_id
        self._groups: list[str] = list(groups)
        self._expected: dict[tuple[str, str], None] = {}
        self._results: dict[tuple[str, str], CheckResult] = {}
        self._phase = Phase.PENDING
        self._decision: GateDecision | None = None
        self._lock = threading.Lock()

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def pending(self) -> list[tuple[str, str]]:
        """(group, check id) pairs still to report."""
        with self._lock:
            return [k for k in self._expected if k not in self._results]

    def expect(self, planned: Iterable[tuple[str, str]]) -> None:
        """Declare every (group, check id) the run will report.

        Raises:
            AggregationError: If collection already started
        """
        with self._lock:
            if self._phase is not Phase.PENDING:
                raise AggregationError(
                    f"Cannot plan a run in phase {self._phase.value}"
                )
            for group, check_id in planned:
                if group not in self._groups:
                    self._groups.append(group)
                self._expected[(group, check_id)] = None
            self._phase = Phase.COLLECTING

    def collect(self, result: CheckResult) -> None:
        """Accept one result.

        Raises:
            AggregationError: Wrong phase, foreign run, unplanned or
                duplicate result
        """
        key = (result.group, result.check_id)
        with self._lock:
            if self._phase is not Phase.COLLECTING:
                raise AggregationError(
                    f"Cannot collect in phase {self._phase.value}"
                )
            if result.run_id != self.run_id:
                raise AggregationError(
                    f"Result for '{result.check_id}' belongs to run "
                    f"{result.run_id}, not {self.run_id}"
                )
            if key not in self._expected:
                raise AggregationError(
                    f"Check '{result.check_id}' is not planned in "
                    f"group '{result.group}'"
                )
            if key in self._results:
                raise AggregationError(
                    f"Duplicate result for '{result.check_id}' in "
                    f"group '{result.group}'"
                )
            self._results[key] = result
        logger.debug(
            "Collected result",
            check=result.check_id,
            group=result.group,
            status=result.status.value,
        )

    @property
    def complete(self) -> bool:
        with self._lock:
            return len(self._results) == len(self._expected)

    def decide(self) -> GateDecision:
        """Produce the decision once every planned check reported.

        Raises:
            AggregationError: Results missing, run aborted, or the
                decision was already produced
        """
        with self._lock:
            if self._phase is Phase.DECIDED:
                raise AggregationError("Run is already decided")
            if self._phase is not Phase.COLLECTING:
                raise AggregationError(
                    f"Cannot decide in phase {self._phase.value}"
                )
            missing = [k for k in self._expected if k not in self._results]
            if missing:
                raise AggregationError(
                    f"{len(missing)} planned checks have not reported: "
                    + ", ".join(f"{g}/{c}" for g, c in missing)
                )

            groups = []
            for name in self._groups:
                results = tuple(
                    self._results[key] for key in self._expected
                    if key[0] == name
                )
                groups.append(GroupOutcome(
                    name=name, status=group_status(results), results=results,
                ))

            self._decision = GateDecision(
                run_id=self.run_id,
                status=decide(self._results.values()),
                groups=tuple(groups),
            )
            self._phase = Phase.DECIDED

        logger.info(
            f"Gate decided: {self._decision.status.value.upper()}",
            run_id=self.run_id,
        )
        return self._decision

    def abort(self) -> None:
        """Discard collected results; no decision will be made."""
        with self._lock:
            if self._phase is Phase.DECIDED:
                raise AggregationError("Cannot abort a decided run")
            self._results.clear()
            self._phase = Phase.ABORTED
        logger.warn("Gate run aborted", run_id=self.run_id)


__all__ = ["Phase", "GateAggregator", "group_status", "decide"]
