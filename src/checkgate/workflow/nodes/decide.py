"""Decide node - publish the gate decision."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from checkgate.core.errors import RunCancelledError
from checkgate.core.result import GateDecision
from checkgate.workflow.state import GateRun


@dataclass
class Decide(BaseNode[GateRun, None, GateDecision]):
    """Fold every collected result into the pass/fail decision."""

    async def run(self, ctx: GraphRunContext[GateRun]) -> End[GateDecision]:
        # A cancelled setup surfaces as a cache failure, not as
        # RunCancelledError, so check the runner as well
        if ctx.state.runner.cancelled:
            raise RunCancelledError(f"Run {ctx.state.run_id} was cancelled")
        return End(ctx.state.aggregator.decide())
