"""Graph workflow definition."""

from pydantic_graph import Graph

from checkgate.core.log import logger
from checkgate.workflow.nodes import (
    Decide,
    ExecuteChecks,
    PlanChecks,
    SelectChanges,
)
from checkgate.workflow.state import GateRun


def create_workflow() -> Graph:
    """Create the gate run graph.

    SelectChanges → PlanChecks → ExecuteChecks → Decide → End
    """
    logger.debug("Building workflow graph")
    return Graph(
        nodes=(SelectChanges, PlanChecks, ExecuteChecks, Decide),
        state_type=GateRun,
    )
