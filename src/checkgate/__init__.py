"""Incremental quality-gate orchestrator."""

__version__ = "0.1.0"
