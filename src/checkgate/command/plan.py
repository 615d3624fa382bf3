"""Plan command - shows what a run would execute."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from checkgate.core.config import State


class PlanCommand(BaseModel):
    """Print the execution plan without running any check."""

    base: str | None = Field(default=None, description="Base branch")
    head: str | None = Field(default=None, description="Revision under test")

    async def run_workflow(self, state: State) -> int:
        from checkgate.workflow.orchestrator import Orchestrator
        from checkgate.workflow.plan import describe

        config = state.config
        orchestrator = Orchestrator.from_config(config)
        plan = orchestrator.plan(
            self.base or config.repo.base_ref,
            self.head or config.repo.head_ref,
        )
        for line in describe(plan):
            print(line)
        return 0
