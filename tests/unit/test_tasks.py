"""Unit tests for background task handles and the polling join."""

from __future__ import annotations

import asyncio

import pytest

from serversync.models import CommandResult, DispatchTask, ExternalCommand, TaskStatus
from serversync.tasks import TaskPool, run_task


class FakeExecutor:
    """Executor whose commands sleep for argv[1] seconds and exit with argv[2].

    Program "missing" raises FileNotFoundError like a program not on PATH.
    """

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    async def run_command(self, command: ExternalCommand, timeout: float | None = None) -> CommandResult:
        if command.program == "missing":
            raise FileNotFoundError(2, "No such file or directory", command.program)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(float(command.args[0]))
        finally:
            self.active -= 1
        exit_code = int(command.args[1])
        return CommandResult(exit_code=exit_code, stdout="", stderr="boom" if exit_code else "")


def make_task(destination: str, delay: float = 0.0, exit_code: int = 0, program: str = "copy") -> DispatchTask:
    command = ExternalCommand.from_tokens([program, str(delay), str(exit_code)])
    return DispatchTask(item_path="/srv/www", destination=destination, command=command)


class TestRunTask:
    async def test_success(self) -> None:
        result = await run_task(FakeExecutor(), make_task("web01"))
        assert result.status is TaskStatus.SUCCEEDED
        assert result.exit_code == 0
        assert result.started_at is not None
        assert result.ended_at is not None

    async def test_nonzero_exit_is_failed(self) -> None:
        result = await run_task(FakeExecutor(), make_task("web01", exit_code=3))
        assert result.status is TaskStatus.FAILED
        assert result.exit_code == 3
        assert result.error_message == "boom"

    async def test_launch_error_is_failed_not_raised(self) -> None:
        result = await run_task(FakeExecutor(), make_task("web01", program="missing"))
        assert result.status is TaskStatus.FAILED
        assert result.exit_code is None
        assert "No such file" in (result.error_message or "")


class TestTaskHandle:
    async def test_status_and_result_lifecycle(self) -> None:
        pool = TaskPool(FakeExecutor())
        handle = pool.launch(make_task("web01", delay=0.05))

        assert handle.status() is TaskStatus.RUNNING
        with pytest.raises(RuntimeError, match="still running"):
            handle.result()

        result = await handle.join()
        assert result.status is TaskStatus.SUCCEEDED
        assert handle.status() is TaskStatus.SUCCEEDED
        assert handle.result() is result

    async def test_cancelled_handle_reports_cancelled(self) -> None:
        pool = TaskPool(FakeExecutor())
        handle = pool.launch(make_task("web01", delay=10))
        await asyncio.sleep(0)

        handle.cancel()
        result = await handle.join()

        assert result.status is TaskStatus.CANCELLED
        assert result.failed


class TestTaskPool:
    async def test_launch_does_not_wait(self) -> None:
        pool = TaskPool(FakeExecutor())
        for destination in ("web01", "web02", "web03"):
            pool.launch(make_task(destination, delay=0.05))

        assert pool.running_count() == 3
        await pool.wait_all(poll_interval=0.01)
        assert pool.running_count() == 0

    async def test_wait_all_returns_results_in_launch_order(self) -> None:
        pool = TaskPool(FakeExecutor())
        pool.launch(make_task("slow", delay=0.08))
        pool.launch(make_task("fast", delay=0.0))
        pool.launch(make_task("failing", delay=0.02, exit_code=1))

        results = await pool.wait_all(poll_interval=0.01)

        assert [r.task.destination for r in results] == ["slow", "fast", "failing"]
        assert [r.status for r in results] == [TaskStatus.SUCCEEDED, TaskStatus.SUCCEEDED, TaskStatus.FAILED]

    async def test_polls_until_all_six_terminal_without_undercounting(self) -> None:
        pool = TaskPool(FakeExecutor())
        for i in range(6):
            pool.launch(make_task(f"web{i}", delay=0.01 * (i + 1)))
        polls: list[tuple[int, int]] = []

        def on_poll(running: int, total: int) -> None:
            actually_running = sum(1 for h in pool.handles if not h.done())
            assert running >= actually_running
            polls.append((running, total))

        results = await pool.wait_all(poll_interval=0.005, on_poll=on_poll)

        assert len(results) == 6
        assert all(h.done() for h in pool.handles)
        assert polls, "expected at least one progress report"
        assert all(total == 6 for _, total in polls)
        assert all(running > 0 for running, _ in polls)

    async def test_wait_all_with_nothing_launched(self) -> None:
        pool = TaskPool(FakeExecutor())
        assert await pool.wait_all(poll_interval=0.01) == []

    async def test_stop_on_failure_cancels_remaining(self) -> None:
        pool = TaskPool(FakeExecutor())
        pool.launch(make_task("failing", delay=0.0, exit_code=1))
        pool.launch(make_task("long", delay=10))

        results = await pool.wait_all(poll_interval=0.01, stop_on_failure=True)

        assert results[0].status is TaskStatus.FAILED
        assert results[1].status is TaskStatus.CANCELLED

    async def test_max_parallel_limits_concurrency(self) -> None:
        executor = FakeExecutor()
        pool = TaskPool(executor, max_parallel=2)
        for i in range(5):
            pool.launch(make_task(f"web{i}", delay=0.02))

        results = await pool.wait_all(poll_interval=0.01)

        assert executor.max_active == 2
        assert all(r.status is TaskStatus.SUCCEEDED for r in results)
