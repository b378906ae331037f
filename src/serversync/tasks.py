"""Background task execution for job mode.

Each dispatch launched through a TaskPool runs as its own asyncio task.
The pool hands back a TaskHandle per launch; the orchestrator joins them
all with a polling loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeAlias

import structlog

from serversync.executor import Executor
from serversync.models import DispatchTask, TaskResult, TaskStatus

__all__ = ["TaskHandle", "TaskPool", "run_task"]

logger = structlog.get_logger(__name__)

PollCallback: TypeAlias = Callable[[int, int], None]


async def run_task(executor: Executor, task: DispatchTask) -> TaskResult:
    """Run one dispatch to completion and turn its outcome into a TaskResult.

    A command that cannot be started is reported as FAILED rather than raised.
    """
    started_at = datetime.now(UTC)
    try:
        result = await executor.run_command(task.command)
    except Exception as e:
        logger.error(
            "Command could not be run",
            item=task.item_path,
            destination=task.destination,
            error=str(e),
        )
        return TaskResult(
            task=task,
            status=TaskStatus.FAILED,
            error_message=str(e),
            started_at=started_at,
            ended_at=datetime.now(UTC),
        )

    status = TaskStatus.SUCCEEDED if result.success else TaskStatus.FAILED
    return TaskResult(
        task=task,
        status=status,
        exit_code=result.exit_code,
        error_message=None if result.success else (result.stderr.strip() or f"exit code {result.exit_code}"),
        started_at=started_at,
        ended_at=datetime.now(UTC),
    )


class TaskHandle:
    """Handle on a launched background task."""

    def __init__(self, task: DispatchTask, future: asyncio.Task[TaskResult]) -> None:
        self._task = task
        self._future = future

    @property
    def task(self) -> DispatchTask:
        return self._task

    def done(self) -> bool:
        return self._future.done()

    def status(self) -> TaskStatus:
        if not self._future.done():
            return TaskStatus.RUNNING
        return self.result().status

    def result(self) -> TaskResult:
        """Return the finished task's result.

        Raises:
            RuntimeError: If the task is still running
        """
        if not self._future.done():
            raise RuntimeError(f"Task for {self._task.item_path} -> {self._task.destination} is still running")
        if self._future.cancelled():
            return TaskResult(task=self._task, status=TaskStatus.CANCELLED, error_message="Cancelled")
        return self._future.result()

    async def join(self) -> TaskResult:
        """Wait for the task to finish without cancelling it if the caller is cancelled."""
        await asyncio.wait([self._future])
        return self.result()

    def cancel(self) -> None:
        self._future.cancel()


class TaskPool:
    """Launches dispatches concurrently and tracks their handles.

    Args:
        executor: Executor that runs the commands
        max_parallel: Maximum number of commands running at once, None for unbounded
    """

    def __init__(self, executor: Executor, max_parallel: int | None = None) -> None:
        self._executor = executor
        self._handles: list[TaskHandle] = []
        self._semaphore = asyncio.Semaphore(max_parallel) if max_parallel else None

    @property
    def handles(self) -> list[TaskHandle]:
        return list(self._handles)

    def launch(self, task: DispatchTask) -> TaskHandle:
        """Start task in the background and return its handle immediately."""
        future = asyncio.create_task(self._run(task), name=f"{task.item_path}->{task.destination}")
        handle = TaskHandle(task, future)
        self._handles.append(handle)
        return handle

    async def _run(self, task: DispatchTask) -> TaskResult:
        if self._semaphore is None:
            return await run_task(self._executor, task)
        async with self._semaphore:
            return await run_task(self._executor, task)

    def running_count(self) -> int:
        return sum(1 for handle in self._handles if not handle.done())

    def cancel_all(self) -> None:
        for handle in self._handles:
            if not handle.done():
                handle.cancel()

    async def wait_all(
        self,
        poll_interval: float,
        on_poll: PollCallback | None = None,
        stop_on_failure: bool = False,
    ) -> list[TaskResult]:
        """Poll until every launched task has reached a terminal state.

        Args:
            poll_interval: Seconds between polls
            on_poll: Called with (running, total) on every poll that finds running tasks
            stop_on_failure: Cancel the remaining tasks once any task has failed

        Returns:
            Results in launch order
        """
        total = len(self._handles)
        while (running := self.running_count()) > 0:
            if stop_on_failure and any(h.done() and h.result().failed for h in self._handles):
                logger.warning("Task failed, cancelling remaining tasks", running=running)
                self.cancel_all()
                await asyncio.gather(*(h.join() for h in self._handles))
                break
            if on_poll is not None:
                on_poll(running, total)
            await asyncio.sleep(poll_interval)
        return [handle.result() for handle in self._handles]
