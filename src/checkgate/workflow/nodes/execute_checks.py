"""ExecuteChecks node - run every applicable check."""

from __future__ import annotations

import asyncio
import tempfile
from dataclasses import dataclass
from pathlib import Path

from pydantic_graph import BaseNode, GraphRunContext

from checkgate.cache.store import cache_key
from checkgate.checks.registry import CheckDefinition
from checkgate.core.errors import CacheBuildError, RunCancelledError
from checkgate.core.log import logger
from checkgate.core.result import CheckResult
from checkgate.runner.check import CheckContext, check_workdir
from checkgate.workflow.nodes.decide import Decide
from checkgate.workflow.plan import PlannedCheck, PlannedGroup
from checkgate.workflow.state import GateRun


def prepare_environment(state: GateRun, definition: CheckDefinition) -> Path:
    """Return a directory populated by the check's setup command.

    With a cache store the directory is shared by every check whose
    setup and inputs hash to the same key, and built only once.

    Raises:
        CacheBuildError: If setup failed
    """
    cwd = check_workdir(definition, state.workdir)
    timeout = definition.timeout or state.timeout

    def builder(location: Path) -> None:
        state.runner.run_setup(definition, state.workdir, location, timeout)

    if state.cache is None:
        location = Path(tempfile.mkdtemp(prefix=f"checkgate-{definition.id}-"))
        try:
            builder(location)
        except Exception as e:
            raise CacheBuildError(definition.id, e) from e
        return location

    key = cache_key(
        definition.tool, definition.cache_inputs, cwd,
        extra=definition.setup or (),
    )
    return state.cache.get_or_build(key, builder, tool=definition.tool).location


def execute_check(state: GateRun, planned: PlannedCheck) -> CheckResult:
    """Run one planned check to a result. Blocking.

    Raises:
        RunCancelledError: If the run was cancelled meanwhile
    """
    definition = planned.definition
    change_set = state.change_set
    common = {
        "check_id": definition.id,
        "group": planned.group,
        "run_id": state.run_id,
    }

    cache_dir = None
    if definition.setup:
        try:
            cache_dir = prepare_environment(state, definition)
        except RunCancelledError:
            raise
        except CacheBuildError as e:
            logger.error(str(e), check=definition.id)
            return CheckResult.errored(
                reason="cache build failed", output=str(e), **common
            )
        except Exception as e:
            logger.exception(f"Environment for '{definition.id}' failed",
                             check=definition.id)
            return CheckResult.errored(
                reason="cache build failed", output=repr(e), **common
            )

    context = CheckContext(
        files=() if change_set.full_scan else planned.files,
        base=change_set.base or "",
        head=change_set.head or state.head_ref,
        mode=change_set.mode.kind,
        cache_dir=cache_dir,
    )
    try:
        return state.runner.run(
            definition,
            state.workdir,
            definition.timeout or state.timeout,
            group=planned.group,
            run_id=state.run_id,
            context=context,
        )
    except RunCancelledError:
        raise
    except Exception as e:
        logger.exception(f"Check '{definition.id}' raised", check=definition.id)
        return CheckResult.errored(
            reason="internal error", output=repr(e), **common
        )


@dataclass
class ExecuteChecks(BaseNode[GateRun]):
    """Run groups concurrently, bounded by the concurrency limit."""

    async def run(self, ctx: GraphRunContext[GateRun]) -> Decide:
        """Execute checks and collect every result.

        Returns:
            Decide: Next node to publish the decision

        Raises:
            RunCancelledError: If the run was cancelled
        """
        state = ctx.state
        semaphore = asyncio.Semaphore(state.concurrency)

        async def run_check(planned: PlannedCheck) -> None:
            if not planned.applicable:
                result = CheckResult.skipped(
                    planned.check_id, planned.group, state.run_id,
                    planned.reason or "not applicable",
                )
            else:
                async with semaphore:
                    result = await asyncio.to_thread(
                        execute_check, state, planned
                    )
            state.aggregator.collect(result)

        async def run_group(group: PlannedGroup) -> list:
            with logger.span("Running group", group=group.name):
                return await asyncio.gather(
                    *(run_check(c) for c in group.checks),
                    return_exceptions=True,
                )

        outcomes = await asyncio.gather(
            *(run_group(g) for g in state.plan.groups)
        )
        errors = [
            o for group in outcomes for o in group
            if isinstance(o, BaseException)
        ]
        if errors:
            cancelled = [e for e in errors if isinstance(e, RunCancelledError)]
            raise cancelled[0] if cancelled else errors[0]

        return Decide()
