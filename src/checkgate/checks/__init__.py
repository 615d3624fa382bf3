"""Check definitions and registry."""

from checkgate.checks.registry import Category, CheckDefinition, CheckRegistry

__all__ = ["Category", "CheckDefinition", "CheckRegistry"]
