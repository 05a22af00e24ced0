"""
Settle Play Runner

High-level runner that coordinates inventory, play parsing, fact
gathering, planning, execution and output.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, TextIO

from settle.engine.config import RunConfig
from settle.engine.display import Display
from settle.engine.errors import PlanError, SettleError
from settle.engine.executor import ConnectionFactory, ModuleExecutor
from settle.engine.facts import build_facts
from settle.engine.inventory import Host, InventoryManager
from settle.engine.planner import HostPlan, TaskPlanner
from settle.engine.playbook import Play, PlaybookParser
from settle.engine.results import RunReport
from settle.engine.scheduler import HostContext, Scheduler

logger = logging.getLogger(__name__)


class PlaybookRunner:
    """
    High-level play runner.

    Coordinates:
    - Inventory loading and host selection (--limit)
    - Play parsing
    - Fact gathering and per-host planning
    - Concurrent per-host execution
    - Output formatting
    """

    def __init__(
        self,
        playbook_path: str,
        inventory_source: str,
        config: Optional[RunConfig] = None,
        limit: Optional[str] = None,
        verbosity: int = 0,
        json_output: bool = False,
        connection_factory: Optional[ConnectionFactory] = None,
        stream: Optional[TextIO] = None,
    ):
        self.playbook_path = Path(playbook_path)
        self.inventory_source = inventory_source
        self.config = config or RunConfig()
        self.limit = limit
        self.json_output = json_output

        self.display = Display(
            color=self.config.color,
            verbosity=verbosity,
            json_output=json_output,
            stream=stream,
        )
        self.executor = ModuleExecutor.from_config(self.config, connection_factory)
        self.scheduler = Scheduler(
            self.executor,
            forks=self.config.forks,
            on_result=self.display.task_result,
        )
        self.planner = TaskPlanner()

        self.inventory: Optional[InventoryManager] = None
        self._contexts: Dict[str, HostContext] = {}

    def run(self) -> RunReport:
        """
        Run the play file synchronously.

        Returns:
            RunReport (check ``report.exit_code`` or ``raise_for_status``)

        A play that fails to plan is recorded on the report (exit code 3)
        and the remaining plays still run.

        Raises:
            InventoryError, ParseError: bad input (nothing ran)
        """
        return asyncio.run(self.run_async())

    def load(self) -> List[Play]:
        """Parse inventory and play file; both must be valid before anything runs."""
        self.inventory = InventoryManager().parse(self.inventory_source)
        self.inventory.resolve()
        return PlaybookParser(self.playbook_path).parse()

    def _limited(self) -> Optional[Set[str]]:
        if not self.limit:
            return None
        names = {host.name for host in self.inventory.get_hosts(self.limit)}
        if not names:
            raise SettleError(f"--limit '{self.limit}' matched no hosts")
        return names

    def _context(self, host: Host) -> HostContext:
        if host.name not in self._contexts:
            self._contexts[host.name] = HostContext(
                host=host,
                check_mode=self.config.check_mode,
                base_dir=self.playbook_path.resolve().parent,
            )
        return self._contexts[host.name]

    async def run_async(self) -> RunReport:
        """Run all plays asynchronously."""
        plays = self.load()
        allowed = self._limited()
        report = RunReport(play_file=str(self.playbook_path), check_mode=self.config.check_mode)

        try:
            for play in plays:
                try:
                    await self._run_play(play, allowed, report)
                except PlanError as e:
                    # Nothing in this play ran; later plays still get their turn
                    logger.debug("Play '%s' abandoned: %s", play.name, e)
                    report.record_play_error(play.name, e)
                    self.display.error(f"ERROR: {e}")
        finally:
            await self.scheduler.close_connections(self._contexts.values())

        if not self.json_output:
            self.display.recap(report)
        return report

    async def _run_play(self, play: Play, allowed: Optional[Set[str]], report: RunReport) -> None:
        report.start_play(play.name)
        self.display.play(play.name, self.config.check_mode)

        targets = self.inventory.get_hosts(play.hosts)
        if allowed is not None:
            targets = [host for host in targets if host.name in allowed]
        if not targets:
            self.display.warning(f"No hosts matched '{play.hosts}', skipping play '{play.name}'")
            return

        contexts = [self._context(host) for host in targets]
        gather = self.config.gather_facts if play.gather_facts is None else play.gather_facts
        if gather:
            await self.scheduler.gather_facts(contexts, report, play.name)

        # Plan every host before anything in this play executes
        host_facts = {
            ctx.host: build_facts(ctx.host, play.vars, ctx.discovered)
            for ctx in contexts if not ctx.failed
        }
        plans: List[HostPlan] = self.planner.plan(play, host_facts)
        plans.extend(self.planner.unplanned(play, ctx.host) for ctx in contexts if ctx.failed)
        logger.debug("Play '%s': %d host(s), %d task(s)", play.name, len(plans), len(play.tasks))

        await self.scheduler.run_play(play.name, plans, self._contexts, report)
