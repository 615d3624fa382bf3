"""Change selection."""

from checkgate.select.changes import (
    ChangeSelector,
    ChangeSet,
    DiffScope,
    FullScan,
    ResolvedRef,
    matches,
    resolve,
)

__all__ = [
    "ChangeSelector",
    "ChangeSet",
    "DiffScope",
    "FullScan",
    "ResolvedRef",
    "matches",
    "resolve",
]
