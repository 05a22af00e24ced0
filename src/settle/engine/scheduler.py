"""
Settle Scheduler

Async per-host execution with fork-style parallelism using asyncio.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Optional

from settle.connections.base import Connection
from settle.engine.errors import TransportError
from settle.engine.executor import ModuleExecutor
from settle.engine.facts import FactSet
from settle.engine.inventory import Host
from settle.engine.planner import HostPlan
from settle.engine.results import RunReport, TaskResult, TaskStatus

logger = logging.getLogger(__name__)

ResultCallback = Callable[[TaskResult], None]


@dataclass
class HostContext:
    """Runtime context owned by a single host's worker."""

    host: Host
    facts: FactSet = field(default_factory=lambda: MappingProxyType({}))
    connection: Optional[Connection] = None
    check_mode: bool = False
    # Directory that relative ``src`` paths resolve against
    base_dir: Path = field(default_factory=Path.cwd)
    # Facts discovered by setup, gathered once per run
    discovered: Optional[Dict[str, Any]] = None
    # Set on the first failed result; later tasks are skipped
    failed: bool = False

    @property
    def name(self) -> str:
        return self.host.name


class Scheduler:
    """
    Async scheduler for play execution.

    Uses asyncio with a semaphore to limit concurrency (like Ansible's forks).
    Executes tasks in "free" strategy: each host walks its own task list
    strictly in order, independently of other hosts. A failed task stops
    that host only; its remaining tasks are recorded as
    skipped-due-to-failure.
    """

    def __init__(
        self,
        executor: ModuleExecutor,
        forks: int = 5,
        on_result: Optional[ResultCallback] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            executor: Runs a single planned task on a host
            forks: Maximum number of hosts worked on at once
            on_result: Called with each result as it is recorded (display)
        """
        self.executor = executor
        self.forks = max(1, forks)
        self.on_result = on_result

    async def _record(self, report: RunReport, result: TaskResult) -> None:
        await report.add(result)
        if self.on_result is not None:
            self.on_result(result)

    async def _bounded(self, semaphore: asyncio.Semaphore, coros: Iterable) -> None:
        async def run(coro):
            async with semaphore:
                await coro

        # Every worker finishes before an unexpected error propagates
        outcomes = await asyncio.gather(*(run(coro) for coro in coros), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def gather_facts(
        self,
        contexts: List[HostContext],
        report: RunReport,
        play_name: str = "",
    ) -> None:
        """Discover facts on every host that has not yet been gathered or failed."""
        semaphore = asyncio.Semaphore(self.forks)

        async def gather(ctx: HostContext) -> None:
            facts, result = await self.executor.gather_facts(ctx, play_name)
            if facts is None:
                ctx.failed = True
                await self._record(report, result)
            else:
                ctx.discovered = facts
                logger.debug("%s: gathered facts in %d attempt(s)", ctx.name, result.attempts)

        pending = [ctx for ctx in contexts if ctx.discovered is None and not ctx.failed]
        await self._bounded(semaphore, (gather(ctx) for ctx in pending))

    async def run_play(
        self,
        play_name: str,
        plans: List[HostPlan],
        contexts: Dict[str, HostContext],
        report: RunReport,
    ) -> None:
        """
        Run planned tasks on every host concurrently (bounded by forks).

        Args:
            play_name: Play the plans belong to (for result ordering)
            plans: One plan per target host
            contexts: HostContext per host name
            report: Shared report the workers append to
        """
        semaphore = asyncio.Semaphore(self.forks)
        await self._bounded(
            semaphore,
            (self._run_host(play_name, plan, contexts[plan.host.name], report) for plan in plans),
        )

    async def _run_host(
        self,
        play_name: str,
        plan: HostPlan,
        ctx: HostContext,
        report: RunReport,
    ) -> None:
        """Walk one host's steps in declaration order."""
        ctx.facts = plan.facts

        for step in plan.steps:
            if ctx.failed:
                result = TaskResult(
                    host=ctx.name,
                    task_name=step.name,
                    position=step.position,
                    status=TaskStatus.SKIPPED_DUE_TO_FAILURE,
                    module=step.task.module.value,
                    play=play_name,
                )
            elif not step.run:
                result = TaskResult(
                    host=ctx.name,
                    task_name=step.name,
                    position=step.position,
                    status=TaskStatus.SKIPPED,
                    module=step.task.module.value,
                    msg=f"guard false: {step.task.guard.source}" if step.task.guard else "",
                    data=dict(step.guard_facts),
                    play=play_name,
                )
            else:
                result = await self.executor.execute(ctx, step, play_name)
                if result.failed:
                    ctx.failed = True
                    logger.debug("%s: '%s' failed, skipping remaining tasks", ctx.name, step.name)

            await self._record(report, result)

    async def close_connections(self, contexts: Iterable[HostContext]) -> None:
        """Close all connections."""
        for ctx in contexts:
            if ctx.connection is not None and ctx.connection.connected:
                try:
                    await ctx.connection.close()
                except (TransportError, OSError) as e:
                    logger.debug("%s: error closing connection: %s", ctx.name, e)
