"""Gate run state carried through the workflow graph."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from checkgate.cache.store import CacheStore
from checkgate.checks.registry import CheckRegistry
from checkgate.core.config import GroupConfig
from checkgate.gate.aggregator import GateAggregator
from checkgate.runner.check import CheckRunner
from checkgate.select.changes import ChangeSelector, ChangeSet
from checkgate.workflow.plan import ExecutionPlan


class GateRun(BaseModel):
    """State container for one gate run.

    Inputs are fixed when the run starts; change_set, plan and
    aggregator are filled in by the graph nodes as it progresses.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    registry: CheckRegistry
    selector: ChangeSelector
    runner: CheckRunner
    workdir: Path
    groups: list[GroupConfig] = Field(default_factory=list)
    cache: CacheStore | None = None
    base_ref: str | None = None
    head_ref: str = "HEAD"
    timeout: float = 600.0
    concurrency: int = 4
    strict_tools: bool = False

    # Filled in by the graph nodes
    change_set: ChangeSet | None = None
    plan: ExecutionPlan | None = None
    aggregator: GateAggregator | None = None


__all__ = ["GateRun"]
