"""Running copy commands on the source host and control commands on destinations."""

from __future__ import annotations

import asyncio
import shlex
from contextlib import ExitStack
from typing import Protocol

import asyncssh

from serversync.models import CommandResult, ExternalCommand

__all__ = [
    "Executor",
    "LocalExecutor",
    "RemoteExecutor",
]


class Executor(Protocol):
    """Anything that can run an ExternalCommand to completion.

    TaskPool and run_task only depend on this, so tests can substitute
    an in-memory fake for the subprocess-backed LocalExecutor.
    """

    async def run_command(self, command: ExternalCommand, timeout: float | None = None) -> CommandResult: ...


def _decode(data: bytes | None) -> str:
    return data.decode(errors="replace") if data else ""


class LocalExecutor:
    """Starts copy commands as child processes of server-sync.

    The argv is handed to the OS as is, without a shell. A command with an
    output_path gets stdout and stderr appended to that file, and its
    CommandResult carries no captured output.
    """

    def __init__(self) -> None:
        self._running: set[asyncio.subprocess.Process] = set()

    async def run_command(self, command: ExternalCommand, timeout: float | None = None) -> CommandResult:
        """Start the command and wait for it to exit.

        Raises:
            OSError: The program or the output file could not be opened
            TimeoutError: timeout elapsed; the child has been terminated
        """
        with ExitStack() as stack:
            if command.output_path is None:
                stdout, stderr = asyncio.subprocess.PIPE, asyncio.subprocess.PIPE
            else:
                stdout = stack.enter_context(command.output_path.open("ab"))
                stderr = asyncio.subprocess.STDOUT
            proc = await asyncio.create_subprocess_exec(
                *command.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
            )
            return await self._communicate(proc, timeout)

    async def _communicate(self, proc: asyncio.subprocess.Process, timeout: float | None) -> CommandResult:
        self._running.add(proc)
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except (TimeoutError, asyncio.CancelledError):
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            raise
        finally:
            self._running.discard(proc)
        return CommandResult(exit_code=proc.returncode or 0, stdout=_decode(out), stderr=_decode(err))

    async def terminate_running(self) -> None:
        """Send SIGTERM to every child still running and wait for them to exit."""
        alive = [proc for proc in self._running if proc.returncode is None]
        for proc in alive:
            proc.terminate()
        await asyncio.gather(*(proc.wait() for proc in alive), return_exceptions=True)


class RemoteExecutor:
    """Runs a command over an open asyncssh connection.

    asyncssh only accepts a command line, so the argv is joined with
    shlex.join and arrives at the remote program unchanged.
    """

    def __init__(self, conn: asyncssh.SSHClientConnection) -> None:
        self._conn = conn

    async def run_command(self, command: ExternalCommand, timeout: float | None = None) -> CommandResult:
        # output_path only applies to local job logs
        completed = await asyncio.wait_for(self._conn.run(shlex.join(command.argv)), timeout=timeout)
        return CommandResult(
            exit_code=completed.exit_status or 0,
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
        )
