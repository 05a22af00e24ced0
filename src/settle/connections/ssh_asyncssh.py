"""
Settle SSH Connection (asyncssh)

SSH connection using asyncssh for async operations.
"""

import asyncio
import logging
import shlex
from typing import Optional

import asyncssh

from settle.connections.base import Connection, RunResult
from settle.engine.errors import CommandTimeout, ModuleError, TransportError
from settle.engine.inventory import Host

logger = logging.getLogger(__name__)


class SSHConnection(Connection):
    """
    SSH connection using asyncssh.

    Supports:
    - Key-based authentication
    - Password authentication
    - SSH agent
    - Custom ports
    """

    def __init__(
        self,
        host: Host,
        connect_timeout: float = 30.0,
        command_timeout: Optional[float] = None,
    ):
        super().__init__(host, connect_timeout, command_timeout)
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._sftp: Optional[asyncssh.SFTPClient] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _error(self, message: str) -> TransportError:
        return TransportError(host=self.host.name, message=message, connection_type='ssh')

    async def connect(self) -> None:
        """Establish SSH connection."""
        connect_kwargs = {
            'host': self.host.address,
            'port': self.host.port,
            'username': self.host.user,
            'connect_timeout': self.connect_timeout,
        }

        if self.host.private_key:
            connect_kwargs['client_keys'] = [self.host.private_key]

        if self.host.password:
            connect_kwargs['password'] = self.host.password

        # Host key checking is on unless explicitly disabled
        checking = self.host.get_variable('host_key_checking',
                                          self.host.get_variable('ansible_ssh_host_key_checking', True))
        if not checking or str(checking).lower() in ('false', 'no'):
            connect_kwargs['known_hosts'] = None

        logger.debug("Connecting to %s@%s:%s", self.host.user, self.host.address, self.host.port)
        try:
            self._conn = await asyncssh.connect(**connect_kwargs)
        except asyncssh.PermissionDenied as e:
            # Credentials will not get better by retrying
            raise TransportError(host=self.host.name, message=f"authentication failed: {e.reason}",
                                 connection_type='ssh', transient=False)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise self._error(str(e) or type(e).__name__)

    async def close(self) -> None:
        """Close SSH connection."""
        if self._sftp:
            self._sftp.exit()
            self._sftp = None

        if self._conn:
            self._conn.close()
            try:
                await self._conn.wait_closed()
            finally:
                self._conn = None

    def _drop(self) -> None:
        """Forget a broken channel so the next attempt reconnects."""
        if self._conn is not None:
            self._conn.abort()
        self._conn = None
        self._sftp = None

    async def run(self, command: str, timeout: Optional[float] = None) -> RunResult:
        """
        Run a command over SSH through /bin/sh.

        Raises:
            TransportError: not connected, or the channel was lost
            CommandTimeout: the command did not finish in time
        """
        if not self._conn:
            raise self._error("not connected")

        timeout = timeout if timeout is not None else self.command_timeout
        full_command = f"/bin/sh -c {shlex.quote(command)}"

        try:
            result = await asyncio.wait_for(
                self._conn.run(full_command, check=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise CommandTimeout(self.host.name, command, timeout or 0)
        except (asyncssh.Error, OSError) as e:
            self._drop()
            raise self._error(f"channel lost: {e}")

        return RunResult(
            rc=result.exit_status if result.exit_status is not None else 255,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )

    async def _get_sftp(self) -> 'asyncssh.SFTPClient':
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def put_content(self, data: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """
        Upload bytes via SFTP.

        Raises:
            TransportError: not connected, or the channel was lost
            ModuleError: the SFTP server rejected the write
        """
        if not self._conn:
            raise self._error("not connected")

        try:
            sftp = await self._get_sftp()
            async with sftp.open(remote_path, 'wb') as remote_file:
                await remote_file.write(data)
            if mode:
                await sftp.chmod(remote_path, int(str(mode), 8))
        except asyncssh.SFTPError as e:
            # The channel is fine; the remote filesystem refused the write
            raise ModuleError("sftp", self.host.name, f"upload to {remote_path} failed: {e.reason}")
        except (asyncssh.Error, OSError) as e:
            self._drop()
            raise self._error(f"upload to {remote_path} failed: {e}")
