"""
Settle Engine Module

Core engine: inventory resolution, planning, reconciliation and reporting.
"""

from settle.engine.inventory import InventoryManager, Host, Group
from settle.engine.playbook import PlaybookParser, Play, Task, ModuleKind
from settle.engine.planner import TaskPlanner
from settle.engine.results import RunReport, TaskResult, TaskStatus
from settle.engine.errors import (
    SettleError,
    InventoryError,
    PlanError,
    TransportError,
    ModuleError,
    PartialRunError,
)

__all__ = [
    'InventoryManager',
    'Host',
    'Group',
    'PlaybookParser',
    'Play',
    'Task',
    'ModuleKind',
    'TaskPlanner',
    'RunReport',
    'TaskResult',
    'TaskStatus',
    'SettleError',
    'InventoryError',
    'PlanError',
    'TransportError',
    'ModuleError',
    'PartialRunError',
]
