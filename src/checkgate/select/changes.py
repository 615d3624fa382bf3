"""Change scope computation and check applicability."""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from checkgate.checks.registry import CheckDefinition
from checkgate.core.errors import ResolutionError
from checkgate.core.log import logger
from checkgate.git.revision import GitCommandError, RevisionSource


class ResolvedRef(BaseModel):
    """A base reference that exists in the repository."""

    model_config = ConfigDict(frozen=True)

    name: str
    revision: str = Field(description="Name to diff against")
    location: Literal["local", "remote"]


class DiffScope(BaseModel):
    """Changes are the diff between a resolved base and head."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["diff"] = "diff"
    base: ResolvedRef
    head: str


class FullScan(BaseModel):
    """No usable base; every tracked file counts as changed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["full"] = "full"
    reason: str


ScanMode = Annotated[DiffScope | FullScan, Field(discriminator="kind")]


class ChangeSet(BaseModel):
    """Paths changed between base and head for one run."""

    model_config = ConfigDict(frozen=True)

    mode: ScanMode
    paths: tuple[str, ...] = ()

    @property
    def full_scan(self) -> bool:
        return isinstance(self.mode, FullScan)

    @property
    def base(self) -> str | None:
        return None if self.full_scan else self.mode.base.revision

    @property
    def head(self) -> str | None:
        return None if self.full_scan else self.mode.head


def resolve(
    source: RevisionSource, ref: str, remote: str
) -> ResolvedRef | None:
    """Find a base branch locally, then on the remote."""
    if source.has_local_branch(ref):
        return ResolvedRef(name=ref, revision=ref, location="local")
    if source.has_remote_branch(ref, remote):
        return ResolvedRef(
            name=ref, revision=f"{remote}/{ref}", location="remote"
        )
    return None


def matches(path: str, pattern: str) -> bool:
    """Whether a repo-relative path matches a glob pattern.

    ``*`` crosses directory separators. Patterns without a slash
    also match against the file name alone.
    """
    path = path.replace("\\", "/")
    if path.startswith("./"):
        path = path[2:]
    if fnmatchcase(path, pattern):
        return True
    if "/" not in pattern:
        return fnmatchcase(path.rsplit("/", 1)[-1], pattern)
    return False


class ChangeSelector:
    """Computes the ChangeSet for a run and check applicability."""

    def __init__(
        self,
        source: RevisionSource,
        remote: str = "origin",
        fetch: bool = False,
        fallback: Literal["full_scan", "error"] = "full_scan",
    ):
        self.source = source
        self.remote = remote
        self.fetch = fetch
        self.fallback = fallback

    def _full_scan(self, reason: str) -> ChangeSet:
        logger.warn(
            "Revision range unavailable, scanning all files",
            reason=reason,
        )
        try:
            paths = tuple(sorted(self.source.tracked_files()))
        except GitCommandError as e:
            logger.warn("Could not list tracked files", error=str(e))
            paths = ()
        return ChangeSet(mode=FullScan(reason=reason), paths=paths)

    def select(self, base_ref: str | None, head_ref: str = "HEAD") -> ChangeSet:
        """Compute the change set between base_ref and head_ref.

        Falls back to a full scan when the base or head cannot be
        resolved, unless the fallback policy is "error".

        Raises:
            ResolutionError: Base or head unresolvable and fallback
                is "error"
        """
        with logger.span("Selecting changes", base=base_ref, head=head_ref):
            if not base_ref:
                return self._full_scan("no base reference configured")

            if self.fetch:
                self.source.fetch(base_ref, self.remote)

            base = resolve(self.source, base_ref, self.remote)
            if base is None:
                reason = (
                    f"'{base_ref}' not found locally or on "
                    f"'{self.remote}'"
                )
                if self.fallback == "error":
                    raise ResolutionError(base_ref, reason)
                return self._full_scan(reason)

            if self.source.rev_parse(head_ref) is None:
                reason = f"head '{head_ref}' does not name a commit"
                if self.fallback == "error":
                    raise ResolutionError(head_ref, reason)
                return self._full_scan(reason)

            try:
                paths = self.source.changed_paths(base.revision, head_ref)
            except GitCommandError as e:
                return self._full_scan(str(e))

            change_set = ChangeSet(
                mode=DiffScope(base=base, head=head_ref),
                paths=tuple(sorted(set(paths))),
            )
            logger.info(
                f"{len(change_set.paths)} changed paths against "
                f"{base.revision}",
                location=base.location,
            )
            return change_set

    @staticmethod
    def matched_paths(
        definition: CheckDefinition, change_set: ChangeSet
    ) -> tuple[str, ...]:
        """Changed paths matching any of the check's patterns."""
        if not definition.paths:
            return change_set.paths
        return tuple(
            path for path in change_set.paths
            if any(matches(path, p) for p in definition.paths)
        )

    def applicable(
        self, definition: CheckDefinition, change_set: ChangeSet
    ) -> bool:
        """A check applies in full-scan mode, or when a changed path
        matches one of its patterns."""
        if change_set.full_scan:
            return True
        return bool(self.matched_paths(definition, change_set))


__all__ = [
    "ResolvedRef",
    "DiffScope",
    "FullScan",
    "ChangeSet",
    "ChangeSelector",
    "resolve",
    "matches",
]
