"""Remote command channel to a device over SSH.

Every call opens its own authenticated connection, does one thing and
closes the connection again. Call volume is a few dozen commands per
test run, so there is no pooling.

Host keys are not verified: the target is a throwaway VM reachable only
through a loopback port forward.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path

import asyncssh

from vsharness.errors import RemoteCommandError, TransferError

logger = logging.getLogger(__name__)

TRANSFER_CHUNK_SIZE = 256 * 1024
READY_MARKER = "ready"


@dataclass(frozen=True)
class ConnectionParams:
    """How to reach a device's SSH server."""
    host: str
    port: int
    username: str = "admin"
    key_path: str | None = None
    connect_timeout: float = 10.0
    command_timeout: float = 30.0

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def from_address(cls, address: str, **kwargs) -> "ConnectionParams":
        """Build params from a host:port string."""
        host, sep, port = address.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"invalid SSH address {address!r}, expected host:port")
        return cls(host=host, port=int(port), **kwargs)

    def with_timeout(self, timeout: float) -> "ConnectionParams":
        """Copy of these params with both timeouts capped at timeout."""
        return replace(
            self,
            connect_timeout=min(self.connect_timeout, timeout),
            command_timeout=timeout,
        )

    def load_client_keys(self) -> list[asyncssh.SSHKey]:
        """Load the private key, or return no keys if it is unusable."""
        if not self.key_path:
            return []
        try:
            key = asyncssh.read_private_key(self.key_path)
        except (OSError, asyncssh.KeyImportError) as e:
            logger.debug(f"SSH key {self.key_path} not available, connecting without it: {e}")
            return []
        logger.debug(f"Loaded SSH key for authentication from {self.key_path}")
        return [key]


class CommandChannel(ABC):
    """Runs commands on and copies files to one remote host."""

    @abstractmethod
    async def exec(self, command: str) -> str:
        """Run a command and return its combined stdout/stderr.

        Raises:
            RemoteCommandError: On transport failure or non-zero exit.
                The captured output is available as ``error.output``.
        """
        ...

    @abstractmethod
    async def transfer(self, local_path: str | Path, remote_path: str) -> int:
        """Copy a local file to remote_path and return the bytes written.

        Raises:
            TransferError: On transport failure or short write
        """
        ...


class SSHChannel(CommandChannel):
    """CommandChannel over asyncssh, one connection per call."""

    def __init__(self, params: ConnectionParams):
        self.params = params

    def _connect(self):
        return asyncssh.connect(
            self.params.host,
            port=self.params.port,
            username=self.params.username,
            client_keys=self.params.load_client_keys(),
            preferred_auth="publickey",
            agent_path=None,
            known_hosts=None,  # Disable host key checking
            connect_timeout=self.params.connect_timeout,
        )

    async def exec(self, command: str) -> str:
        logger.debug(f"Running SSH command on {self.params.address}: {command}")
        try:
            result = await asyncio.wait_for(
                self._run(command), timeout=self.params.command_timeout,
            )
        except asyncio.TimeoutError:
            raise RemoteCommandError(
                command,
                f"command timed out after {self.params.command_timeout:g}s: {command}",
            )
        except (asyncssh.Error, OSError) as e:
            raise RemoteCommandError(
                command, f"connecting to SSH at {self.params.address}: {e}",
            ) from e

        output = result.stdout or ""
        if isinstance(output, bytes):
            output = output.decode(errors="replace")
        exit_status = result.exit_status
        if exit_status is None:
            exit_status = -1
        if exit_status != 0:
            raise RemoteCommandError(
                command,
                f"command exited with code {exit_status}: {command}",
                exit_status=exit_status,
                output=output,
            )
        return output

    async def _run(self, command: str) -> asyncssh.SSHCompletedProcess:
        async with self._connect() as conn:
            return await conn.run(command, stderr=asyncssh.STDOUT, check=False)

    async def transfer(self, local_path: str | Path, remote_path: str) -> int:
        local_path = Path(local_path)
        try:
            expected = os.path.getsize(local_path)
        except OSError as e:
            raise TransferError(f"opening local file {local_path}: {e}") from e

        logger.debug(
            f"Copying {local_path} to {self.params.address}:{remote_path} via SFTP "
            f"({expected} bytes)"
        )
        try:
            written = await asyncio.wait_for(
                self._copy(local_path, remote_path), timeout=self.params.command_timeout,
            )
        except asyncio.TimeoutError:
            raise TransferError(
                f"copying {local_path} timed out after {self.params.command_timeout:g}s",
                expected=expected,
            )
        except (asyncssh.Error, OSError) as e:
            raise TransferError(f"copying {local_path} to {remote_path}: {e}", expected=expected) from e

        if written != expected:
            raise TransferError(
                f"incomplete copy: wrote {written} bytes, expected {expected}",
                written=written,
                expected=expected,
            )

        logger.debug(f"File copied successfully ({written} bytes)")
        return written

    async def _copy(self, local_path: Path, remote_path: str) -> int:
        written = 0
        async with self._connect() as conn:
            async with conn.start_sftp_client() as sftp:
                async with sftp.open(remote_path, "wb") as remote_file:
                    with open(local_path, "rb") as local_file:
                        while True:
                            chunk = local_file.read(TRANSFER_CHUNK_SIZE)
                            if not chunk:
                                break
                            written += await remote_file.write(chunk)
        return written


async def probe(channel: CommandChannel) -> None:
    """Readiness probe: the remote shell answers a trivial command.

    Raises:
        RemoteCommandError: If the shell is not reachable or misbehaves
    """
    output = await channel.exec(f"echo {READY_MARKER}")
    if READY_MARKER not in output:
        raise RemoteCommandError(
            f"echo {READY_MARKER}", f"unexpected output from SSH: {output.strip()!r}",
            output=output,
        )
