"""
Settle Task Planner

Expands a play's ordered task list for every target host: evaluates each
guard against the host's facts and renders the parameters of the tasks
that will run. Planning happens for all hosts before anything executes,
so a malformed guard or template aborts the play without side effects.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from settle.engine.errors import PlanError, TemplateError
from settle.engine.facts import FactSet
from settle.engine.inventory import Host
from settle.engine.playbook import Play, Task
from settle.engine.templating import render_recursive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedTask:
    """A task as it applies to one host."""

    task: Task
    run: bool
    become: bool = False
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    # Facts a false guard was evaluated on, reported with the skip
    guard_facts: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def name(self) -> str:
        return self.task.name

    @property
    def position(self) -> int:
        return self.task.position


@dataclass
class HostPlan:
    """The ordered steps one host will go through in a play."""

    host: Host
    facts: FactSet
    steps: List[PlannedTask] = field(default_factory=list)

    @property
    def runnable(self) -> List[PlannedTask]:
        return [step for step in self.steps if step.run]


class TaskPlanner:
    """Resolve per-host task applicability for a play."""

    def plan(self, play: Play, host_facts: Dict[Host, FactSet]) -> List[HostPlan]:
        """
        Plan a play for every host that has facts.

        Args:
            play: Parsed play
            host_facts: Facts per target host

        Returns:
            HostPlan per host, sorted by host name

        Raises:
            PlanError: a guard references an undefined fact, or a parameter
                template cannot be rendered, on any host
        """
        plans = []
        for host in sorted(host_facts, key=lambda h: h.name):
            plans.append(self.plan_host(play, host, host_facts[host]))
        return plans

    def plan_host(self, play: Play, host: Host, facts: FactSet) -> HostPlan:
        """Plan a play for a single host, preserving declaration order."""
        plan = HostPlan(host=host, facts=facts)

        for task in play.tasks:
            become = play.become if task.become is None else task.become
            run = self._applies(task, host, facts)
            params: Mapping[str, Any] = MappingProxyType({})
            guard_facts: Mapping[str, Any] = MappingProxyType({})
            if run:
                params = self._render(task, host, facts)
            else:
                guard_facts = MappingProxyType({
                    key: facts[key] for key in sorted(task.guard.fact_keys()) if key in facts
                })
                logger.debug("%s: guard false for task '%s' (%s)", host.name, task.name, task.guard)
            plan.steps.append(PlannedTask(
                task=task, run=run, become=become, params=params, guard_facts=guard_facts,
            ))

        return plan

    def unplanned(self, play: Play, host: Host) -> HostPlan:
        """Plan for a host that will not run (e.g. facts failed): nothing is evaluated."""
        become = play.become
        return HostPlan(
            host=host,
            facts=MappingProxyType({}),
            steps=[
                PlannedTask(task=task, run=False, become=become if task.become is None else task.become)
                for task in play.tasks
            ],
        )

    def _applies(self, task: Task, host: Host, facts: FactSet) -> bool:
        if task.guard is None:
            return True
        try:
            return task.guard.evaluate(facts)
        except PlanError as e:
            raise PlanError(e.reason, task=task.name, host=host.name)

    def _render(self, task: Task, host: Host, facts: FactSet) -> Mapping[str, Any]:
        try:
            rendered = render_recursive(dict(task.params), facts)
        except TemplateError as e:
            raise TemplateError(e.reason, task=task.name, host=host.name)
        return MappingProxyType(rendered)


def plan_play(
    play: Play,
    host_facts: Dict[Host, FactSet],
    planner: Optional[TaskPlanner] = None,
) -> List[HostPlan]:
    """Convenience wrapper around TaskPlanner.plan."""
    return (planner or TaskPlanner()).plan(play, host_facts)
