# Copyright (c) 2024 Settle Contributors
# MIT License

"""
Settle Error Classes.

All custom exceptions for clear error handling and exit codes.
Exit codes follow ansible-playbook: 2 for host failures, 3 for bad input.
"""

from __future__ import annotations

import enum
from typing import Dict, List, Optional


class ExitCode(enum.IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    KEYBOARD_INTERRUPT = 130


class SettleError(Exception):
    """Base exception for all Settle errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ConfigError(SettleError):
    """Invalid configuration value or file."""


class ParseError(SettleError):
    """Error parsing inventory, play file, or other input files."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"{self.label}{location}: {message}", details)

    label = "Parse error"


class InventoryError(ParseError):
    """Malformed or ambiguous host data. Aborts the run before execution."""

    label = "Inventory error"

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class PlanError(ParseError):
    """Malformed task or guard. Fatal for the play that contains it."""

    label = "Plan error"

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        task: str | None = None,
        host: str | None = None,
    ) -> None:
        self.task = task
        self.host = host
        self.reason = message
        if task:
            message = f"task '{task}': {message}"
        if host:
            message = f"{message} (host {host})"
        super().__init__(message, file_path=file_path)


class TemplateError(PlanError):
    """Error rendering a Jinja2 template in task parameters."""

    def __init__(
        self,
        message: str,
        template: str | None = None,
        task: str | None = None,
        host: str | None = None,
    ) -> None:
        self.template = template
        if template:
            truncated = template[:100] + "..." if len(template) > 100 else template
            message = f"{message} in template {truncated!r}"
        super().__init__(message, task=task, host=host)


class TransportError(SettleError):
    """
    Transient channel failure (timeout, connection refused, lost channel).

    The executor retries these with bounded exponential backoff, unless
    ``transient`` is false (e.g. rejected credentials).
    """

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        details: str | None = None,
        transient: bool = True,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        self.transient = transient
        # Attempts made before giving up; set by the executor
        self.attempts = 1
        conn_info = f" ({connection_type})" if connection_type else ""
        super().__init__(f"Connection to {host}{conn_info} failed: {message}", details)


class ModuleError(SettleError):
    """Deterministic reconciliation failure. Surfaced as a failed result, never retried."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        module: str,
        host: str,
        message: str,
        rc: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
    ) -> None:
        self.module = module
        self.host = host
        self.reason = message
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr

        details_parts = []
        if rc is not None:
            details_parts.append(f"rc={rc}")
        if stderr:
            details_parts.append(f"stderr: {stderr.strip()[:200]}")

        super().__init__(
            f"Module '{module}' failed on {host}: {message}",
            "; ".join(details_parts) if details_parts else None
        )


class CommandTimeout(ModuleError):
    """A remote command exceeded the command timeout."""

    def __init__(self, host: str, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(
            "command", host, f"timed out after {timeout:g}s: {command[:80]}", rc=124
        )


class PartialRunError(SettleError):
    """
    Some hosts failed.

    Successful changes on other hosts are kept; nothing is rolled back.
    """

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, failures: Dict[str, List[str]]) -> None:
        self.failures = failures
        lines = []
        for host in sorted(failures):
            for failure in failures[host]:
                lines.append(f"{host}: {failure}")
        super().__init__(
            f"{len(failures)} host(s) failed: {', '.join(sorted(failures))}",
            "\n  ".join(lines) if lines else None,
        )

    @property
    def failed_hosts(self) -> List[str]:
        return sorted(self.failures)


def exit_code_for(error: Optional[BaseException]) -> int:
    """Map an exception (or None for success) to a process exit code."""
    if error is None:
        return ExitCode.SUCCESS
    if isinstance(error, KeyboardInterrupt):
        return ExitCode.KEYBOARD_INTERRUPT
    if isinstance(error, SettleError):
        return int(error.exit_code)
    return ExitCode.GENERIC_ERROR
