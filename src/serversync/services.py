"""Stopping and starting services on destination machines."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from serversync.connection import RemoteRunner
from serversync.models import CommandResult, ExternalCommand

__all__ = ["ServiceControlError", "ServiceController"]

logger = structlog.get_logger(__name__)


class ServiceControlError(Exception):
    """Raised when a service stop/start command fails on one or more hosts."""

    def __init__(self, action: str, failures: dict[str, CommandResult]) -> None:
        self.action = action
        self.failures = failures
        details = [
            f"{host} (exit {result.exit_code}): {result.stderr.strip() or result.stdout.strip()}"
            for host, result in failures.items()
        ]
        super().__init__(f"Service {action} failed on {len(failures)} host(s):\n" + "\n".join(details))


class ServiceController:
    """Issues service stop/start across every destination in one remote call."""

    def __init__(self, runner: RemoteRunner, manager: str = "systemctl", sudo: bool = True) -> None:
        """
        Args:
            runner: Remote execution capability
            manager: Service manager program on the destinations
            sudo: Prefix the service manager with sudo (requires passwordless sudo)
        """
        self._runner = runner
        self._manager = manager
        self._sudo = sudo

    def build_command(self, action: str, services: Sequence[str]) -> ExternalCommand:
        tokens = ["sudo", self._manager] if self._sudo else [self._manager]
        return ExternalCommand.from_tokens([*tokens, action, *services])

    async def stop(self, hosts: Sequence[str], services: Sequence[str]) -> None:
        await self._control("stop", hosts, services)

    async def start(self, hosts: Sequence[str], services: Sequence[str]) -> None:
        await self._control("start", hosts, services)

    async def _control(self, action: str, hosts: Sequence[str], services: Sequence[str]) -> None:
        command = self.build_command(action, services)
        logger.info(f"Service {action} on {len(hosts)} host(s)", services=list(services), hosts=list(hosts))
        results = await self._runner.run_on_hosts(hosts, command)
        failures = {host: result for host, result in results.items() if not result.success}
        if failures:
            raise ServiceControlError(action, failures)
