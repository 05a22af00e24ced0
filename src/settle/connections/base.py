"""
Settle Connection Base Class

Abstract base class for all connection types. The engine only needs
``run(command) -> (rc, stdout, stderr)`` plus an upload primitive.
"""

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from settle.engine.inventory import Host


@dataclass
class RunResult:
    """Result of running a command on a remote host."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    Implementations raise TransportError for channel failures (the caller may
    retry) and CommandTimeout when a command outlives its timeout.
    """

    def __init__(
        self,
        host: Host,
        connect_timeout: float = 30.0,
        command_timeout: Optional[float] = None,
    ):
        self.host = host
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """True while the channel is usable."""

    @abstractmethod
    async def run(self, command: str, timeout: Optional[float] = None) -> RunResult:
        """
        Run a shell command on the remote host.

        Args:
            command: Command line, interpreted by /bin/sh
            timeout: Seconds before CommandTimeout (defaults to command_timeout)

        Returns:
            RunResult with rc, stdout, stderr
        """

    @abstractmethod
    async def put_content(self, data: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """
        Write bytes to a file on the remote host.

        Args:
            data: File content
            remote_path: Destination path (parent directory must exist)
            mode: Optional file mode (e.g., '0644')
        """

    async def stat(self, remote_path: str) -> Optional[dict]:
        """
        Get file/directory information.

        Args:
            remote_path: Path to stat

        Returns:
            Dict with 'exists', 'isdir', 'isreg', 'mode', 'size' or None if not found
        """
        result = await self.run(f"stat -c '%F|%a|%s' {shlex.quote(remote_path)}")
        if result.rc != 0:
            return None
        kind, mode, size = result.stdout.strip().split('|', 2)
        return {
            'exists': True,
            'isdir': kind == 'directory',
            'isreg': kind.startswith('regular'),
            'mode': mode.zfill(4),
            'size': int(size),
        }

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()


def create_connection(
    host: Host,
    connect_timeout: float = 30.0,
    command_timeout: Optional[float] = None,
) -> Connection:
    """Create an (unconnected) connection for a host based on its connection type."""
    if host.connection == 'local':
        from settle.connections.local import LocalConnection
        return LocalConnection(host, connect_timeout, command_timeout)

    if host.connection == 'ssh':
        from settle.connections.ssh_asyncssh import SSHConnection
        return SSHConnection(host, connect_timeout, command_timeout)

    raise ValueError(f"Unknown connection type: {host.connection}")
