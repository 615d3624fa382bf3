"""Workflow nodes for the gate run graph."""

from checkgate.workflow.nodes.decide import Decide
from checkgate.workflow.nodes.execute_checks import ExecuteChecks
from checkgate.workflow.nodes.plan_checks import PlanChecks
from checkgate.workflow.nodes.select_changes import SelectChanges

__all__ = [
    "SelectChanges",
    "PlanChecks",
    "ExecuteChecks",
    "Decide",
]
