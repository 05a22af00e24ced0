"""
Settle Local Connection

Execute commands on the local machine (no remote connection).
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from settle.connections.base import Connection, RunResult
from settle.engine.errors import CommandTimeout, TransportError
from settle.engine.inventory import Host

logger = logging.getLogger(__name__)


class LocalConnection(Connection):
    """
    Local connection - execute commands on the control node.

    Used for localhost execution without any network operations.
    """

    def __init__(
        self,
        host: Host,
        connect_timeout: float = 30.0,
        command_timeout: Optional[float] = None,
    ):
        super().__init__(host, connect_timeout, command_timeout)
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Local connection is always available."""
        self._connected = True

    async def close(self) -> None:
        """Nothing to close for local connection."""
        self._connected = False

    async def run(self, command: str, timeout: Optional[float] = None) -> RunResult:
        """Run a command locally through /bin/sh."""
        timeout = timeout if timeout is not None else self.command_timeout

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
            )
        except OSError as e:
            raise TransportError(self.host.name, f"cannot spawn shell: {e}", connection_type='local')

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise CommandTimeout(self.host.name, command, timeout or 0)

        return RunResult(
            rc=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
        )

    async def put_content(self, data: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """Write bytes to a local file."""
        path = Path(remote_path).expanduser()
        try:
            path.write_bytes(data)
            if mode:
                os.chmod(path, int(str(mode), 8))
        except OSError as e:
            raise TransportError(self.host.name, f"write to {remote_path} failed: {e}",
                                 connection_type='local')
