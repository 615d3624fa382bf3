"""Gate run reports."""

from checkgate.report.report import CheckReport, GateReport, GroupReport

__all__ = ["CheckReport", "GroupReport", "GateReport"]
