"""SelectChanges node - compute the change set for the run."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from pydantic_graph import BaseNode, GraphRunContext

from checkgate.workflow.nodes.plan_checks import PlanChecks
from checkgate.workflow.state import GateRun


@dataclass
class SelectChanges(BaseNode[GateRun]):
    """Resolve the base reference and list changed paths."""

    async def run(self, ctx: GraphRunContext[GateRun]) -> PlanChecks:
        """Compute the change set.

        Returns:
            PlanChecks: Next node to schedule checks

        Raises:
            ResolutionError: Base or head unresolvable and fallback is
                "error"
        """
        state = ctx.state
        state.change_set = await asyncio.to_thread(
            state.selector.select, state.base_ref, state.head_ref
        )
        return PlanChecks()
