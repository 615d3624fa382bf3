"""Execution plan: which checks run in which group, and why others
are skipped."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from pydantic import BaseModel, ConfigDict

from checkgate.checks.registry import CheckDefinition, CheckRegistry
from checkgate.core.config import GroupConfig
from checkgate.core.log import logger
from checkgate.select.changes import ChangeSelector, ChangeSet

SKIP_BY_GROUP = "skipped by group"
SKIP_NO_CHANGES = "no matching changes"


class PlannedCheck(BaseModel):
    """A check as scheduled for one group of one run."""

    model_config = ConfigDict(frozen=True)

    group: str
    definition: CheckDefinition
    applicable: bool
    reason: str | None = None
    files: tuple[str, ...] = ()

    @property
    def check_id(self) -> str:
        return self.definition.id


class PlannedGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    checks: tuple[PlannedCheck, ...] = ()

    @property
    def runnable(self) -> list[PlannedCheck]:
        return [c for c in self.checks if c.applicable]


class ExecutionPlan(BaseModel):
    """Ordered group → checks mapping for one run. Read-only once
    built."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    change_set: ChangeSet
    groups: tuple[PlannedGroup, ...] = ()

    def keys(self) -> list[tuple[str, str]]:
        """(group, check id) for every planned check."""
        return [(g.name, c.check_id) for g in self.groups for c in g.checks]

    @property
    def runnable(self) -> list[PlannedCheck]:
        return [c for g in self.groups for c in g.runnable]

    def group(self, name: str) -> PlannedGroup:
        for group in self.groups:
            if group.name == name:
                return group
        raise KeyError(name)


def default_groups(registry: CheckRegistry) -> list[GroupConfig]:
    """One group per category, in order of first appearance."""
    by_category: dict[str, list[str]] = {}
    for definition in registry.all():
        by_category.setdefault(definition.category.value, []).append(
            definition.id
        )
    return [
        GroupConfig(name=category, checks=ids)
        for category, ids in by_category.items()
    ]


def _plan_group(
    group: GroupConfig,
    registry: CheckRegistry,
    selector: ChangeSelector,
    change_set: ChangeSet,
) -> PlannedGroup:
    ids = sorted(dict.fromkeys(group.checks), key=registry.order_of)
    skipped = set(group.skip)
    planned: list[PlannedCheck] = []
    chosen: list[CheckDefinition] = []

    for check_id in ids:
        definition = registry.lookup(check_id)
        files = ChangeSelector.matched_paths(definition, change_set)

        reason = None
        if check_id in skipped:
            reason = SKIP_BY_GROUP
        elif not selector.applicable(definition, change_set):
            reason = SKIP_NO_CHANGES
        else:
            rival = next(
                (c for c in chosen
                 if c.id in definition.excludes
                 or definition.id in c.excludes),
                None,
            )
            if rival is not None:
                reason = f"excluded by {rival.id}"

        if reason is None:
            chosen.append(definition)
        planned.append(PlannedCheck(
            group=group.name,
            definition=definition,
            applicable=reason is None,
            reason=reason,
            files=files,
        ))

    return PlannedGroup(name=group.name, checks=tuple(planned))


def build_plan(
    run_id: str,
    registry: CheckRegistry,
    groups: Sequence[GroupConfig] | None,
    selector: ChangeSelector,
    change_set: ChangeSet,
) -> ExecutionPlan:
    """Apply group membership, skip lists, applicability and mutual
    exclusion to produce the plan."""
    groups = list(groups) if groups else default_groups(registry)
    plan = ExecutionPlan(
        run_id=run_id,
        change_set=change_set,
        groups=tuple(
            _plan_group(g, registry, selector, change_set) for g in groups
        ),
    )
    logger.info(
        f"Planned {len(plan.runnable)} of {len(plan.keys())} checks "
        f"in {len(plan.groups)} groups",
        mode=change_set.mode.kind,
    )
    return plan


def describe(plan: ExecutionPlan) -> Iterable[str]:
    """Human-readable plan lines."""
    mode = plan.change_set.mode
    if plan.change_set.full_scan:
        yield f"mode: full scan ({mode.reason})"
    else:
        yield (f"mode: diff {mode.base.revision}...{mode.head} "
               f"({len(plan.change_set.paths)} changed paths)")
    for group in plan.groups:
        yield f"{group.name}:"
        for check in group.checks:
            state = "run" if check.applicable else f"skip ({check.reason})"
            yield f"  {check.check_id}: {state}"


__all__ = [
    "PlannedCheck",
    "PlannedGroup",
    "ExecutionPlan",
    "build_plan",
    "default_groups",
    "describe",
]
