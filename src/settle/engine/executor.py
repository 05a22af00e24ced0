"""
Settle Module Executor

Runs one planned task on one host: makes sure the host's channel is up,
instantiates the module for the task's tag and drives reconciliation.
Transient channel failures are retried with bounded exponential backoff;
module failures are deterministic and are reported, never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from settle.connections.base import Connection, create_connection
from settle.engine.config import RunConfig
from settle.engine.errors import ModuleError, TransportError
from settle.engine.inventory import Host
from settle.engine.planner import PlannedTask
from settle.engine.reconcile import ApplyRecord, reconcile
from settle.engine.results import FACTS_POSITION, TaskResult, TaskStatus
from settle.modules.base import get_module
from settle.modules.builtin_setup import gather_facts

if TYPE_CHECKING:
    from settle.engine.scheduler import HostContext

logger = logging.getLogger(__name__)

T = TypeVar('T')

ConnectionFactory = Callable[[Host, float, Optional[float]], Connection]

GATHER_FACTS = "Gathering Facts"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient channel errors."""

    retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0

    @classmethod
    def from_config(cls, config: RunConfig) -> 'RetryPolicy':
        return cls(
            retries=config.retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
        )

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
        return min(self.backoff_max, self.backoff_base * 2 ** attempt)


class ModuleExecutor:
    """Execute planned tasks against a host's connection."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        connect_timeout: float = 30.0,
        command_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.connection_factory = connection_factory or create_connection
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: RunConfig,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> 'ModuleExecutor':
        return cls(
            policy=RetryPolicy.from_config(config),
            connection_factory=connection_factory,
            connect_timeout=config.connect_timeout,
            command_timeout=config.command_timeout,
        )

    async def ensure_connected(self, ctx: 'HostContext') -> Connection:
        """Create and connect the host's channel if it is not up."""
        if ctx.connection is None:
            ctx.connection = self.connection_factory(
                ctx.host, self.connect_timeout, self.command_timeout
            )
        if not ctx.connection.connected:
            await ctx.connection.connect()
        return ctx.connection

    async def _reset(self, ctx: 'HostContext') -> None:
        """Drop a broken channel so the next attempt reconnects."""
        if ctx.connection is not None:
            try:
                await ctx.connection.close()
            except (TransportError, OSError) as e:
                logger.debug("%s: error closing broken connection: %s", ctx.host.name, e)

    async def with_retries(
        self,
        ctx: 'HostContext',
        operation: Callable[[], Awaitable[T]],
        label: str,
    ) -> Tuple[T, int]:
        """
        Run ``operation`` with a connected channel, retrying TransportError.

        Returns:
            (operation result, attempts used)

        Raises:
            TransportError: not transient, or still failing after the last retry
            ModuleError: raised by the operation (not retried)
        """
        attempt = 0
        while True:
            try:
                await self.ensure_connected(ctx)
                return await operation(), attempt + 1
            except TransportError as e:
                e.attempts = attempt + 1
                if not e.transient:
                    logger.warning("%s: '%s' failed, not retrying: %s", ctx.host.name, label, e)
                    raise
                if attempt + 1 >= self.policy.max_attempts:
                    logger.warning("%s: unreachable during '%s' after %d attempt(s): %s",
                                   ctx.host.name, label, attempt + 1, e)
                    raise
                delay = self.policy.delay(attempt)
                logger.info("%s: transport error during '%s' (attempt %d/%d), retrying in %.1fs: %s",
                            ctx.host.name, label, attempt + 1, self.policy.max_attempts, delay, e)
                await self._reset(ctx)
                await self._sleep(delay)
                attempt += 1

    async def gather_facts(self, ctx: 'HostContext', play_name: str = "") -> Tuple[Optional[Dict[str, Any]], TaskResult]:
        """
        Discover a host's facts.

        Returns:
            (facts or None on failure, result for the report)
        """
        async def operation() -> Dict[str, Any]:
            return await gather_facts(ctx.connection)

        try:
            facts, attempts = await self.with_retries(ctx, operation, GATHER_FACTS)
        except Exception as e:
            return None, self._failed(ctx, GATHER_FACTS, FACTS_POSITION, "setup", e, play_name)

        return facts, TaskResult(
            host=ctx.host.name,
            task_name=GATHER_FACTS,
            position=FACTS_POSITION,
            status=TaskStatus.UNCHANGED,
            module="setup",
            data=dict(facts),
            attempts=attempts,
            play=play_name,
        )

    async def execute(self, ctx: 'HostContext', step: PlannedTask, play_name: str = "") -> TaskResult:
        """
        Run one planned task on the host and classify the outcome.

        Never raises for a host-level problem: transport, module and
        unexpected errors all become a failed result for this host only.
        """
        module_class = get_module(step.task.module)
        kind = step.task.module.value

        error = module_class(step.params, ctx, become=step.become).validate_args()
        if error:
            return TaskResult(
                host=ctx.host.name,
                task_name=step.name,
                position=step.position,
                status=TaskStatus.FAILED,
                module=kind,
                msg=error,
                play=play_name,
            )

        record = ApplyRecord()

        async def operation():
            # Fresh instance per attempt: the connection may have been replaced
            module = module_class(step.params, ctx, become=step.become)
            return await reconcile(module, check_mode=ctx.check_mode, record=record)

        try:
            outcome, attempts = await self.with_retries(ctx, operation, step.name)
        except Exception as e:
            return self._failed(ctx, step.name, step.position, kind, e, play_name)

        return TaskResult(
            host=ctx.host.name,
            task_name=step.name,
            position=step.position,
            status=outcome.status,
            module=kind,
            msg=outcome.msg,
            diff=outcome.diff,
            data=outcome.data,
            attempts=attempts,
            play=play_name,
        )

    def _failed(
        self,
        ctx: 'HostContext',
        task_name: str,
        position: int,
        kind: str,
        error: Exception,
        play_name: str,
    ) -> TaskResult:
        data: Dict[str, Any] = {}
        attempts = 1
        if isinstance(error, ModuleError):
            msg = error.reason
            for key in ("rc", "stdout", "stderr"):
                value = getattr(error, key)
                if value not in (None, ""):
                    data[key] = value.rstrip("\n") if isinstance(value, str) else value
        elif isinstance(error, TransportError):
            msg = str(error)
            data["unreachable"] = True
            attempts = error.attempts
        else:
            logger.exception("%s: unexpected error during '%s'", ctx.host.name, task_name)
            msg = f"unexpected error: {type(error).__name__}: {error}"
            data["exception"] = type(error).__name__
        return TaskResult(
            host=ctx.host.name,
            task_name=task_name,
            position=position,
            status=TaskStatus.FAILED,
            module=kind,
            msg=msg,
            data=data,
            attempts=attempts,
            play=play_name,
        )
