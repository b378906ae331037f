"""SSH access to destination hosts for service control."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from types import TracebackType
from typing import Any, Protocol, Self

import asyncssh
import structlog

from serversync.executor import RemoteExecutor
from serversync.models import CommandResult, ExternalCommand

__all__ = ["Connection", "RemoteRunner", "SSHRemoteRunner"]

logger = structlog.get_logger(__name__)


class Connection:
    """One asyncssh client connection to a destination host.

    Host aliases, identities and users from ~/.ssh/config are honoured by
    asyncssh; explicit arguments here take precedence. Use as an async
    context manager to connect and close around a block.
    """

    def __init__(
        self,
        host: str,
        username: str | None = None,
        port: int = 22,
        connect_timeout: float | None = 30,
        known_hosts: str | None = None,
        keepalive_interval: int = 15,
    ) -> None:
        self._host = host
        self._options: dict[str, Any] = {
            "port": port,
            "connect_timeout": connect_timeout,
            "keepalive_interval": keepalive_interval,
        }
        if username is not None:
            self._options["username"] = username
        if known_hosts is not None:
            self._options["known_hosts"] = known_hosts
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def ssh_connection(self) -> asyncssh.SSHClientConnection:
        """The open asyncssh connection.

        Raises:
            RuntimeError: Before connect() or after disconnect()
        """
        if self._conn is None:
            raise RuntimeError(f"Not connected to {self._host}")
        return self._conn

    async def connect(self) -> None:
        self._conn = await asyncssh.connect(self._host, **self._options)
        logger.debug("Connected", host=self._host, port=self._options["port"])

    async def disconnect(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        await self._conn.wait_closed()
        self._conn = None
        logger.debug("Disconnected", host=self._host)

    async def run(self, command: ExternalCommand, timeout: float | None = None) -> CommandResult:
        return await RemoteExecutor(self.ssh_connection).run_command(command, timeout=timeout)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect()


class RemoteRunner(Protocol):
    """Runs one command on a set of hosts as a single operation."""

    async def run_on_hosts(self, hosts: Sequence[str], command: ExternalCommand) -> dict[str, CommandResult]: ...


class SSHRemoteRunner:
    """RemoteRunner opening a short-lived SSH connection per host, all hosts concurrently."""

    def __init__(
        self,
        username: str | None = None,
        port: int = 22,
        connect_timeout: float | None = 30,
        known_hosts: str | None = None,
        command_timeout: float | None = None,
    ) -> None:
        self._connection_args: dict[str, Any] = {
            "username": username,
            "port": port,
            "connect_timeout": connect_timeout,
            "known_hosts": known_hosts,
        }
        self._command_timeout = command_timeout

    async def run_on_hosts(self, hosts: Sequence[str], command: ExternalCommand) -> dict[str, CommandResult]:
        """Run command everywhere and collect results keyed by host.

        Every host is waited for, so no connection outlives the call.

        Raises:
            asyncssh.Error, OSError: The first host that could not be reached
        """
        outcomes = await asyncio.gather(*(self._run_on(host, command) for host in hosts), return_exceptions=True)
        results: dict[str, CommandResult] = {}
        errors: list[BaseException] = []
        for host, outcome in zip(hosts, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Remote command failed", host=host, command=command.display(), error=str(outcome))
                errors.append(outcome)
            else:
                results[host] = outcome
        if errors:
            raise errors[0]
        return results

    async def _run_on(self, host: str, command: ExternalCommand) -> CommandResult:
        async with Connection(host, **self._connection_args) as connection:
            result = await connection.run(command, timeout=self._command_timeout)
        logger.debug("Remote command finished", host=host, command=command.display(), exit_code=result.exit_code)
        return result
