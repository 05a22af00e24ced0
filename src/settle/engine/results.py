"""
Settle Result Classes

Per-(host, task) results and the run report that aggregates them.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from settle.engine.errors import PartialRunError, PlanError


class TaskStatus(Enum):
    """Status of a task on a host."""
    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED_DUE_TO_FAILURE = "skipped-due-to-failure"


# Summary buckets; skipped-due-to-failure is counted as skipped
SUMMARY_KEYS = ("skipped", "unchanged", "changed", "failed")

_BUCKETS = {
    TaskStatus.SKIPPED: "skipped",
    TaskStatus.SKIPPED_DUE_TO_FAILURE: "skipped",
    TaskStatus.UNCHANGED: "unchanged",
    TaskStatus.CHANGED: "changed",
    TaskStatus.FAILED: "failed",
}

# Position used for the synthetic fact-gathering result
FACTS_POSITION = -1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TaskResult:
    """Result of one task on one host."""

    host: str
    task_name: str
    position: int
    status: TaskStatus
    module: str = ""
    msg: str = ""
    diff: Dict[str, Any] = field(default_factory=dict)
    # Module-specific data (installed version, checksum, ...)
    data: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    play: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result: Dict[str, Any] = {
            "task": self.task_name,
            "position": self.position,
            "module": self.module,
            "status": self.status.value,
        }
        if self.msg:
            result["msg"] = self.msg
        if self.diff:
            result["diff"] = self.diff
        if self.data:
            result["data"] = self.data
        if self.attempts > 1:
            result["attempts"] = self.attempts
        result["timestamp"] = self.timestamp.isoformat()
        return result

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    @property
    def changed(self) -> bool:
        return self.status == TaskStatus.CHANGED

    @property
    def skipped(self) -> bool:
        return self.status in (TaskStatus.SKIPPED, TaskStatus.SKIPPED_DUE_TO_FAILURE)


@dataclass
class HostStats:
    """Counts for a single host."""

    host: str
    skipped: int = 0
    unchanged: int = 0
    changed: int = 0
    failed: int = 0

    def record(self, status: TaskStatus) -> None:
        bucket = _BUCKETS[status]
        setattr(self, bucket, getattr(self, bucket) + 1)

    def merge(self, other: 'HostStats') -> None:
        for key in SUMMARY_KEYS:
            setattr(self, key, getattr(self, key) + getattr(other, key))

    def to_dict(self) -> Dict[str, int]:
        return {key: getattr(self, key) for key in SUMMARY_KEYS}

    @property
    def has_failures(self) -> bool:
        return self.failed > 0


class RunReport:
    """
    Aggregated results of a run.

    Host workers append concurrently through ``add``; every read view is
    ordered deterministically (hosts by name, tasks by play then position),
    independent of completion order.
    """

    def __init__(self, play_file: str = "", check_mode: bool = False):
        self.play_file = play_file
        self.check_mode = check_mode
        self._results: List[TaskResult] = []
        self._plays: List[str] = []
        # Plays that could not be planned, with the error that stopped them
        self.play_errors: List[Tuple[str, PlanError]] = []
        self._lock = asyncio.Lock()

    async def add(self, result: TaskResult) -> None:
        """Append a result (safe to call from concurrent host workers)."""
        async with self._lock:
            self._results.append(result)

    def add_nowait(self, result: TaskResult) -> None:
        """Append from synchronous code that holds no concurrent workers."""
        self._results.append(result)

    def start_play(self, name: str) -> None:
        self._plays.append(name)

    def record_play_error(self, name: str, error: PlanError) -> None:
        """Note a play that was abandoned before any of its tasks ran."""
        self.play_errors.append((name, error))

    def _sort_key(self, result: TaskResult) -> tuple:
        play_index = self._plays.index(result.play) if result.play in self._plays else -1
        return (play_index, result.position)

    @property
    def results(self) -> List[TaskResult]:
        """All results, sorted by host, play and task position."""
        return sorted(self._results, key=lambda r: (r.host, self._sort_key(r)))

    @property
    def hosts(self) -> List[str]:
        return sorted({r.host for r in self._results})

    def host_results(self, host: str) -> List[TaskResult]:
        """Ordered results for one host (declaration order)."""
        return sorted((r for r in self._results if r.host == host), key=self._sort_key)

    def host_stats(self) -> Dict[str, HostStats]:
        stats: Dict[str, HostStats] = {}
        for host in self.hosts:
            stats[host] = HostStats(host)
            for result in self.host_results(host):
                stats[host].record(result.status)
        return stats

    def summary(self) -> Dict[str, int]:
        """Global counts of skipped, unchanged, changed, failed."""
        totals = HostStats("*")
        for stats in self.host_stats().values():
            totals.merge(stats)
        return totals.to_dict()

    def failed_hosts(self) -> List[str]:
        return [host for host, stats in self.host_stats().items() if stats.has_failures]

    def failures(self) -> Dict[str, List[str]]:
        """Failing task name and message per failed host."""
        failures: Dict[str, List[str]] = {}
        for result in self.results:
            if result.failed:
                failures.setdefault(result.host, []).append(f"{result.task_name}: {result.msg}")
        return failures

    @property
    def success(self) -> bool:
        return not self.failed_hosts() and not self.play_errors

    @property
    def status(self) -> str:
        return "success" if self.success else "failed"

    @property
    def exit_code(self) -> int:
        if self.play_errors:
            return int(PlanError.exit_code)
        return 0 if self.success else int(PartialRunError.exit_code)

    def raise_for_status(self) -> None:
        """Raise the first play's PlanError, or PartialRunError if any host failed."""
        if self.play_errors:
            raise self.play_errors[0][1]
        if self.failed_hosts():
            raise PartialRunError(self.failures())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        stats = self.host_stats()
        result: Dict[str, Any] = {
            "play_file": self.play_file,
            "check_mode": self.check_mode,
            "status": self.status,
            "summary": self.summary(),
            "hosts": {
                host: {
                    "stats": stats[host].to_dict(),
                    "tasks": [
                        {"play": r.play, **r.to_dict()} for r in self.host_results(host)
                    ],
                }
                for host in self.hosts
            },
        }
        if self.play_errors:
            result["play_errors"] = [
                {"play": name, "error": str(error)} for name, error in self.play_errors
            ]
        return result

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
