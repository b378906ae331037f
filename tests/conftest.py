"""Shared test fixtures for server-sync tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from serversync.models import CommandResult, CopyItemSpec


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Keep library logs quiet while showing serversync logs in live logging."""
    logging.getLogger().setLevel(logging.WARNING)
    logging.getLogger("serversync").setLevel(logging.DEBUG)
    logging.getLogger("tests").setLevel(logging.DEBUG)


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo structlog configuration done by a test (e.g. by the CLI)."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def mock_executor() -> MagicMock:
    """Create a mock LocalExecutor that succeeds for every command."""
    executor = MagicMock()
    executor.run_command = AsyncMock(return_value=CommandResult(exit_code=0, stdout="", stderr=""))
    executor.terminate_running = AsyncMock()
    return executor


@pytest.fixture
def mock_runner() -> MagicMock:
    """Create a mock RemoteRunner reporting success on every host."""
    runner = MagicMock()

    async def run_on_hosts(hosts, command):  # noqa: ANN001, ANN202
        return {host: CommandResult(exit_code=0, stdout="", stderr="") for host in hosts}

    runner.run_on_hosts = AsyncMock(side_effect=run_on_hosts)
    return runner


@pytest.fixture
def robocopy_item() -> CopyItemSpec:
    return CopyItemSpec(path="c:\\dir", command='robocopy "%SOURCEITEM%" "%DESTINATIONITEM%"')


@pytest.fixture
def rsync_item() -> CopyItemSpec:
    return CopyItemSpec(path="/srv/www", command="rsync -a %SOURCEITEM%/ %DESTINATIONITEM%/")


@pytest.fixture
def failed_result() -> CommandResult:
    """A failed command result with error message."""
    return CommandResult(exit_code=1, stdout="", stderr="error occurred")
