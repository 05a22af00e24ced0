"""
Settle Reconciliation

The probe / apply / re-probe protocol that makes every task idempotent:

1. probe; a match means ``unchanged`` and nothing is touched
2. in check mode stop here and report ``changed`` (would change)
3. apply, then probe again; a match means ``changed``, anything else
   means the desired state was not reached and the task ``failed``

A task may be reconciled more than once when the channel drops and the
executor retries. ``ApplyRecord`` carries over the fact that an earlier
attempt already started ``apply``, so a retry that finds the host
converged still reports ``changed``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from settle.engine.results import TaskStatus
from settle.modules.base import Module

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """What reconciliation did for one module invocation."""

    status: TaskStatus
    msg: str = ""
    diff: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApplyRecord:
    """Whether, and with which diff, apply was started for a task."""

    diff: Optional[Dict[str, Any]] = None

    @property
    def applied(self) -> bool:
        return self.diff is not None


async def reconcile(
    module: Module,
    check_mode: bool = False,
    record: Optional[ApplyRecord] = None,
) -> Outcome:
    """
    Drive a module to its desired state.

    Args:
        module: Module instance bound to the host's connection
        check_mode: Probe only, never apply
        record: Shared across retried attempts of the same task

    Raises:
        ModuleError: probe or apply failed deterministically
        TransportError: the channel failed (caller may retry)
    """
    probe = await module.probe()
    if probe.matches:
        if record is not None and record.applied:
            logger.debug("%s [%s]: converged by an earlier attempt", module.host_name, module.name)
            return Outcome(TaskStatus.CHANGED, diff=record.diff, data=module.data)
        return Outcome(TaskStatus.UNCHANGED, msg=probe.msg, data=module.data)

    if check_mode:
        return Outcome(TaskStatus.CHANGED, msg="would change", diff=probe.diff, data=module.data)

    logger.debug("%s [%s]: applying %s", module.host_name, module.name, probe.diff)
    if record is not None and not record.applied:
        # Recorded before apply: a dropped channel may leave it half done
        record.diff = probe.diff
    await module.apply(probe)

    if not module.verify_after_apply:
        return Outcome(TaskStatus.CHANGED, diff=probe.diff, data=module.data)

    after = await module.probe()
    if after.matches:
        return Outcome(TaskStatus.CHANGED, diff=probe.diff, data=module.data)

    logger.debug("%s [%s]: still differs after apply: %s", module.host_name, module.name, after.diff)
    return Outcome(
        TaskStatus.FAILED,
        msg="desired state not reached after apply" + (f": {after.msg}" if after.msg else ""),
        diff=after.diff,
        data=module.data,
    )
