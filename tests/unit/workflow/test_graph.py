"""Tests for the workflow graph definition."""

from checkgate.workflow.graph import create_workflow


def test_workflow_has_every_node():
    graph = create_workflow()

    assert set(graph.node_defs) == {
        "SelectChanges", "PlanChecks", "ExecuteChecks", "Decide",
    }
