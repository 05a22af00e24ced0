"""
Tests for per-host scheduling: isolation, ordering and concurrency bounds.
"""

import asyncio
from typing import List
from unittest.mock import patch

import pytest

from fake_host import FakeHost, FakeWorld
from settle.engine.executor import ModuleExecutor, RetryPolicy
from settle.engine.facts import build_facts
from settle.engine.inventory import Host
from settle.engine.planner import TaskPlanner
from settle.engine.playbook import PlaybookParser
from settle.engine.results import RunReport, TaskResult, TaskStatus
from settle.engine.scheduler import HostContext, Scheduler

PLAY = """
- name: Site
  hosts: all
  become: true
  tasks:
    - name: Install nginx
      package:
        name: "{{ pkg }}"
    - name: Only on Debian
      command: echo debian
      when: os_family == "Debian"
    - name: Start nginx
      service:
        name: nginx
        state: started
"""


async def no_sleep(delay: float) -> None:
    return None


def build(world: FakeWorld, names: List[str], forks: int = 5, on_result=None):
    executor = ModuleExecutor(RetryPolicy(retries=1), world.factory, sleep=no_sleep)
    scheduler = Scheduler(executor, forks=forks, on_result=on_result)
    contexts = {name: HostContext(host=Host.from_vars(name, {"user": "deploy"})) for name in names}
    return scheduler, contexts


async def run(scheduler: Scheduler, contexts, play_text: str = PLAY, pkg: str = "nginx") -> RunReport:
    play = PlaybookParser("site.yml").parse_string(play_text)[0]
    report = RunReport()
    report.start_play(play.name)
    await scheduler.gather_facts(list(contexts.values()), report, play.name)
    host_facts = {
        ctx.host: build_facts(ctx.host, {"pkg": pkg}, ctx.discovered)
        for ctx in contexts.values() if not ctx.failed
    }
    planner = TaskPlanner()
    plans = planner.plan(play, host_facts)
    plans.extend(planner.unplanned(play, ctx.host) for ctx in contexts.values() if ctx.failed)
    await scheduler.run_play(play.name, plans, contexts, report)
    return report


def statuses(report: RunReport, host: str):
    return [r.status for r in report.host_results(host)]


class TestScheduler:
    """Test the free strategy with fail-fast per host."""

    @pytest.mark.asyncio
    async def test_all_hosts_converge(self):
        """Test every host runs its steps in order."""
        world = FakeWorld(FakeHost("web1"), FakeHost("web2"), FakeHost("rh1", os_family="RedHat"))
        scheduler, contexts = build(world, ["web1", "web2", "rh1"])

        report = await run(scheduler, contexts)

        for host in ("web1", "web2"):
            assert statuses(report, host) == [TaskStatus.CHANGED] * 3
        assert statuses(report, "rh1") == [TaskStatus.CHANGED, TaskStatus.SKIPPED, TaskStatus.CHANGED]
        skipped = report.host_results("rh1")[1]
        assert skipped.msg == 'guard false: os_family == "Debian"'
        assert skipped.data == {"os_family": "RedHat"}
        assert report.success

    @pytest.mark.asyncio
    async def test_failure_isolated_to_host(self):
        """Test a failing host skips its remaining tasks without affecting others."""
        world = FakeWorld(FakeHost("web1"), FakeHost("web2", repo={}))
        scheduler, contexts = build(world, ["web1", "web2"])

        report = await run(scheduler, contexts)

        assert statuses(report, "web1") == [TaskStatus.CHANGED] * 3
        assert statuses(report, "web2") == [
            TaskStatus.FAILED,
            TaskStatus.SKIPPED_DUE_TO_FAILURE,
            TaskStatus.SKIPPED_DUE_TO_FAILURE,
        ]
        assert contexts["web2"].failed
        assert not contexts["web1"].failed
        assert report.failed_hosts() == ["web2"]
        # Nothing after the failure touched web2
        assert world["web2"].commands_run == []

    @pytest.mark.asyncio
    async def test_unreachable_host_at_fact_gathering(self):
        """Test a host that cannot be reached gets a failed facts result and skips."""
        down = FakeHost("down")
        down.connect_failures = 100
        world = FakeWorld(FakeHost("web1"), down)
        scheduler, contexts = build(world, ["web1", "down"])

        report = await run(scheduler, contexts)

        down_results = report.host_results("down")
        assert down_results[0].task_name == "Gathering Facts"
        assert down_results[0].status == TaskStatus.FAILED
        assert down_results[0].data["unreachable"] is True
        assert [r.status for r in down_results[1:]] == [TaskStatus.SKIPPED_DUE_TO_FAILURE] * 3
        assert statuses(report, "web1") == [TaskStatus.CHANGED] * 3

    @pytest.mark.asyncio
    async def test_results_reported_in_declaration_order(self):
        """Test per-host order holds even when completion interleaves."""
        seen: List[TaskResult] = []
        names = [f"h{i}" for i in range(6)]
        world = FakeWorld(*(FakeHost(n) for n in names))
        scheduler, contexts = build(world, names, on_result=seen.append)

        report = await run(scheduler, contexts)

        assert report.hosts == names
        for name in names:
            positions = [r.position for r in seen if r.host == name]
            assert positions == [0, 1, 2]
        assert len(report.results) == 18

    @pytest.mark.asyncio
    async def test_forks_bound_concurrency(self):
        """Test no more than `forks` hosts are in flight at once."""
        names = [f"h{i}" for i in range(6)]
        world = FakeWorld(*(FakeHost(n) for n in names))
        scheduler, contexts = build(world, names, forks=2)

        in_flight = 0
        peak = 0
        original = scheduler.executor.execute

        async def tracking_execute(ctx, step, play_name=""):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            try:
                return await original(ctx, step, play_name)
            finally:
                in_flight -= 1

        scheduler.executor.execute = tracking_execute

        report = await run(scheduler, contexts)

        assert report.success
        assert peak == 2

    @pytest.mark.asyncio
    async def test_close_connections(self):
        """Test connections are closed at the end of a run."""
        world = FakeWorld(FakeHost("web1"))
        scheduler, contexts = build(world, ["web1"])
        await run(scheduler, contexts)
        assert contexts["web1"].connection.connected

        await scheduler.close_connections(contexts.values())

        assert not contexts["web1"].connection.connected


COPY_PLAY = """
- name: Config
  hosts: all
  tasks:
    - name: Write config
      copy:
        dest: /etc/app.conf
        content: "listen 80\\n"
    - name: Ping
      ping:
"""


class TestUnexpectedErrors:
    """Test that one host's unexpected exception does not take down the run."""

    @pytest.mark.asyncio
    async def test_upload_crash_fails_only_that_host(self):
        """Test an exception from the channel fails the host while others finish."""
        broken = FakeHost("web2")
        broken.put_error = RuntimeError("sftp subsystem crashed")
        world = FakeWorld(FakeHost("web1"), broken)
        scheduler, contexts = build(world, ["web1", "web2"])

        report = await run(scheduler, contexts, COPY_PLAY)

        assert statuses(report, "web1") == [TaskStatus.CHANGED, TaskStatus.UNCHANGED]
        assert statuses(report, "web2") == [TaskStatus.FAILED, TaskStatus.SKIPPED_DUE_TO_FAILURE]
        assert report.host_results("web2")[0].msg.startswith("unexpected error: RuntimeError")
        assert contexts["web2"].failed
        assert report.failed_hosts() == ["web2"]

    @pytest.mark.asyncio
    async def test_other_workers_finish_before_error_propagates(self):
        """Test an exception escaping a worker is raised only after the others complete."""
        world = FakeWorld(FakeHost("web1"), FakeHost("web2"))
        scheduler, contexts = build(world, ["web1", "web2"])
        real_execute = scheduler.executor.execute

        async def execute(ctx, step, play_name=""):
            if ctx.name == "web1":
                raise RuntimeError("worker crashed")
            await asyncio.sleep(0)
            return await real_execute(ctx, step, play_name)

        with patch.object(scheduler.executor, "execute", side_effect=execute):
            with pytest.raises(RuntimeError, match="worker crashed"):
                await run(scheduler, contexts, COPY_PLAY)

        assert world["web2"].files["/etc/app.conf"][0] == b"listen 80\n"
