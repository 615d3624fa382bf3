"""Gate orchestrator: drives one gate run from revisions to report."""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from pydantic_graph import End

from checkgate.cache.store import CacheStore
from checkgate.checks.registry import CheckRegistry
from checkgate.core.config import Config, GroupConfig
from checkgate.core.errors import RunCancelledError
from checkgate.core.log import logger
from checkgate.gate.aggregator import Phase
from checkgate.git.revision import GitRevisionSource
from checkgate.report.report import GateReport
from checkgate.runner.check import CheckRunner
from checkgate.select.changes import ChangeSelector
from checkgate.workflow.graph import create_workflow
from checkgate.workflow.nodes import SelectChanges
from checkgate.workflow.plan import ExecutionPlan, build_plan
from checkgate.workflow.state import GateRun


def new_run_id(name: str) -> str:
    """Unique, sortable run id such as ``gate-20240101-120000-1a2b3c``."""
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"{name}-{stamp}-{uuid.uuid4().hex[:6]}"


class RunScopes:
    """Latest run wins within a scope.

    Claiming a scope cancels whichever run held it before, so a newer
    push to the same branch supersedes the gate still running for the
    older one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._holders: dict[str, CheckRunner] = {}

    def claim(self, scope: str, runner: CheckRunner) -> None:
        with self._lock:
            previous = self._holders.get(scope)
            self._holders[scope] = runner
        if previous is not None and previous is not runner:
            logger.warn("Superseding in-progress run", scope=scope)
            previous.cancel()

    def release(self, scope: str, runner: CheckRunner) -> None:
        with self._lock:
            if self._holders.get(scope) is runner:
                del self._holders[scope]

    def holder(self, scope: str) -> CheckRunner | None:
        with self._lock:
            return self._holders.get(scope)


class Orchestrator:
    """Runs gate runs against one repository and check catalog.

    Each call to run() is an independent gate run with its own run id,
    runner and aggregator; nothing but the cache is shared between runs.
    """

    def __init__(
        self,
        registry: CheckRegistry,
        selector: ChangeSelector,
        *,
        groups: Sequence[GroupConfig] = (),
        workdir: Path = Path("."),
        cache: CacheStore | None = None,
        output_dir: Path | None = None,
        timeout: float = 600.0,
        concurrency: int = 4,
        strict_tools: bool = False,
        run_name: str = "gate",
        max_cache_entries: int | None = None,
        scopes: RunScopes | None = None,
    ):
        self.registry = registry
        self.selector = selector
        self.groups = list(groups)
        self.workdir = Path(workdir)
        self.cache = cache
        self.output_dir = output_dir
        self.timeout = timeout
        self.concurrency = concurrency
        self.strict_tools = strict_tools
        self.run_name = run_name
        self.max_cache_entries = max_cache_entries
        self.scopes = scopes or RunScopes()
        self._lock = threading.Lock()
        self._active: list[CheckRunner] = []

    @classmethod
    def from_config(
        cls, config: Config, scopes: RunScopes | None = None
    ) -> Orchestrator:
        """Wire an orchestrator from loaded configuration.

        Raises:
            ConfigError: Invalid check catalog or missing git templates
        """
        registry = CheckRegistry.from_config(config.checks, config.groups)
        workdir = Path(config.repo.workdir)
        source = GitRevisionSource(workdir, config.commands.get("git", {}))
        selector = ChangeSelector(
            source,
            remote=config.repo.remote,
            fetch=config.repo.fetch,
            fallback=config.repo.fallback,
        )
        return cls(
            registry,
            selector,
            groups=config.groups,
            workdir=workdir,
            cache=CacheStore(config.caching.root) if config.caching.enabled else None,
            output_dir=config.execution.output_dir,
            timeout=config.execution.timeout,
            concurrency=config.execution.concurrency,
            strict_tools=config.execution.strict_tools,
            run_name=config.execution.name,
            max_cache_entries=config.caching.max_entries,
            scopes=scopes,
        )

    def _new_run(self, base_ref: str | None, head_ref: str) -> GateRun:
        return GateRun(
            run_id=new_run_id(self.run_name),
            registry=self.registry,
            selector=self.selector,
            runner=CheckRunner(self.output_dir),
            workdir=self.workdir,
            groups=self.groups,
            cache=self.cache,
            base_ref=base_ref,
            head_ref=head_ref,
            timeout=self.timeout,
            concurrency=self.concurrency,
            strict_tools=self.strict_tools,
        )

    def plan(
        self, base_ref: str | None = None, head_ref: str = "HEAD"
    ) -> ExecutionPlan:
        """Compute what a run would execute, without executing it."""
        change_set = self.selector.select(base_ref, head_ref)
        return build_plan(
            new_run_id(self.run_name),
            self.registry,
            self.groups,
            self.selector,
            change_set,
        )

    async def run(
        self,
        base_ref: str | None = None,
        head_ref: str = "HEAD",
        scope: str | None = None,
    ) -> GateReport:
        """Execute one gate run.

        Args:
            base_ref: Branch to compare against, None for a full scan
            head_ref: Revision under test
            scope: Runs sharing a scope supersede each other

        Returns:
            GateReport for the decided run

        Raises:
            ConfigError: Invalid configuration, nothing was run
            ResolutionError: Base unresolvable with fallback "error"
            RunCancelledError: The run was cancelled or superseded
        """
        state = self._new_run(base_ref, head_ref)
        with self._lock:
            self._active.append(state.runner)
        if scope is not None:
            self.scopes.claim(scope, state.runner)

        workflow = create_workflow()
        decision = None
        try:
            with logger.span("Gate run", run_id=state.run_id,
                             base=base_ref, head=head_ref):
                async with workflow.iter(SelectChanges(), state=state) as run:
                    async for node in run:
                        if isinstance(node, End):
                            decision = node.data
        except (RunCancelledError, asyncio.CancelledError):
            # Task cancellation does not reach worker threads; kill
            # their subprocesses before giving up the run
            state.runner.cancel()
            if state.aggregator is not None and state.aggregator.phase in (
                Phase.PENDING, Phase.COLLECTING
            ):
                state.aggregator.abort()
            raise
        finally:
            if scope is not None:
                self.scopes.release(scope, state.runner)
            with self._lock:
                self._active.remove(state.runner)

        if self.cache is not None and self.max_cache_entries:
            self.cache.prune(self.max_cache_entries)

        return GateReport.build(state.plan, decision)

    def cancel(self) -> None:
        """Cancel every run in progress; none of them will decide."""
        with self._lock:
            active = list(self._active)
        for runner in active:
            runner.cancel()


__all__ = ["Orchestrator", "RunScopes", "new_run_id"]
