"""PlanChecks node - decide which checks run in which group."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, GraphRunContext

from checkgate.core.errors import ConfigError
from checkgate.gate.aggregator import GateAggregator
from checkgate.runner.check import missing_tools
from checkgate.workflow.nodes.execute_checks import ExecuteChecks
from checkgate.workflow.plan import build_plan
from checkgate.workflow.state import GateRun


@dataclass
class PlanChecks(BaseNode[GateRun]):
    """Build the execution plan and arm the aggregator."""

    async def run(self, ctx: GraphRunContext[GateRun]) -> ExecuteChecks:
        state = ctx.state
        plan = build_plan(
            state.run_id,
            state.registry,
            state.groups,
            state.selector,
            state.change_set,
        )

        if state.strict_tools:
            definitions = {c.check_id: c.definition for c in plan.runnable}
            missing = missing_tools(definitions.values(), state.workdir)
            if missing:
                raise ConfigError(
                    "Executables not found: "
                    + ", ".join(f"{exe} (check '{cid}')"
                                for cid, exe in missing)
                )

        aggregator = GateAggregator(
            state.run_id, groups=[g.name for g in plan.groups]
        )
        aggregator.expect(plan.keys())

        state.plan = plan
        state.aggregator = aggregator
        return ExecuteChecks()
