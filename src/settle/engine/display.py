"""
Settle Display

Ansible-like console output: PLAY/TASK banners, per-host result lines and
the final PLAY RECAP. Suppressed in --json mode.
"""

import json
import sys
from typing import Optional, TextIO, Tuple

from settle.engine.results import RunReport, TaskResult, TaskStatus

GREEN = '\033[32m'
YELLOW = '\033[33m'
RED = '\033[31m'
CYAN = '\033[36m'
RESET = '\033[0m'

STATUS_STYLE = {
    TaskStatus.UNCHANGED: ('ok', GREEN),
    TaskStatus.CHANGED: ('changed', YELLOW),
    TaskStatus.FAILED: ('failed', RED),
    TaskStatus.SKIPPED: ('skipped', CYAN),
    TaskStatus.SKIPPED_DUE_TO_FAILURE: ('skipped-due-to-failure', CYAN),
}

RECAP_STYLE = (
    ('unchanged', GREEN),
    ('changed', YELLOW),
    ('failed', RED),
    ('skipped', CYAN),
)


class Display:
    """Console output for a run."""

    def __init__(
        self,
        color: bool = True,
        verbosity: int = 0,
        json_output: bool = False,
        stream: Optional[TextIO] = None,
    ):
        self.color = color
        self.verbosity = verbosity
        self.json_output = json_output
        self.stream = stream or sys.stdout
        self._last_task: Optional[Tuple[str, int]] = None

    def _paint(self, text: str, color: str) -> str:
        if not self.color:
            return text
        return f"{color}{text}{RESET}"

    def _print(self, line: str = "") -> None:
        if not self.json_output:
            print(line, file=self.stream)

    def play(self, name: str, check_mode: bool = False) -> None:
        """Print play banner."""
        self._last_task = None
        suffix = " (check mode)" if check_mode else ""
        self._print(f"\nPLAY [{name}]{suffix} " + "*" * 50)

    def task(self, name: str) -> None:
        """Print task banner."""
        self._print(f"\nTASK [{name}] " + "*" * max(0, 60 - len(name) - 8))

    def task_result(self, result: TaskResult) -> None:
        """Print result for a host, with a banner when the task changes."""
        # Hosts progress independently, so banners repeat as they interleave
        key = (result.play, result.position)
        if key != self._last_task:
            self.task(result.task_name)
            self._last_task = key

        label, color = STATUS_STYLE[result.status]
        line = self._paint(f"{label}: [{result.host}]", color)

        if result.msg and (result.failed or self.verbosity > 0):
            line += f" => {result.msg}"
        if result.attempts > 1 and self.verbosity > 0:
            line += f" (attempts: {result.attempts})"
        self._print(line)

        if result.diff and self.verbosity > 0 and result.changed:
            self._print(f"  diff: {json.dumps(result.diff, sort_keys=True)}")
        if self.verbosity >= 2:
            for key in ('stdout', 'stderr'):
                if result.data.get(key):
                    self._print(f"  {key}: {str(result.data[key])[:200]}")

    def recap(self, report: RunReport) -> None:
        """Print final recap."""
        self._print("\nPLAY RECAP " + "*" * 60)

        for host, stats in report.host_stats().items():
            parts = []
            counts = stats.to_dict()
            for key, color in RECAP_STYLE:
                text = f"{key}={counts[key]}"
                parts.append(self._paint(text, color) if counts[key] else text)
            self._print(f"{host:40} : " + "  ".join(parts))

        if report.check_mode:
            self._print("\n(check mode: no changes were made)")

    def warning(self, msg: str) -> None:
        """Print a warning message."""
        if not self.json_output:
            print(self._paint(f"[WARNING]: {msg}", YELLOW), file=sys.stderr)

    def error(self, msg: str) -> None:
        """Print an error message (stderr, also in JSON mode)."""
        print(self._paint(msg, RED), file=sys.stderr)
