"""Run command - executes the gate."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from checkgate.core.log import logger

if TYPE_CHECKING:
    from checkgate.core.config import State


class RunCommand(BaseModel):
    """Run every applicable check and decide the gate.

    Revisions default to config.repo; the exit code is 0 when the gate
    passes and 1 when it fails.
    """

    base: str | None = Field(
        default=None,
        description="Base branch to diff against (overrides config.repo.base_ref)",
    )
    head: str | None = Field(
        default=None,
        description="Revision under test (overrides config.repo.head_ref)",
    )

    async def run_workflow(self, state: State) -> int:
        """Run gate workflow.

        Args:
            state: State instance with config loaded

        Returns:
            Exit code (0=pass, 1=fail)
        """
        from checkgate.workflow.orchestrator import Orchestrator

        config = state.config
        base = self.base or config.repo.base_ref
        head = self.head or config.repo.head_ref

        orchestrator = Orchestrator.from_config(config)
        report = await orchestrator.run(base, head)

        print(report.render_text())

        targets = [Path(config.execution.output_dir) / report.run_id / "report.json"]
        if config.execution.report_json is not None:
            targets.append(Path(config.execution.report_json))
        for target in targets:
            report.write_json(target)
            logger.debug("Wrote report", path=str(target))

        return report.exit_code
