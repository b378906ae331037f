"""Orchestrator fanning copy items out to destination hosts."""

from __future__ import annotations

import asyncio
import re
import secrets
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import structlog

from serversync.executor import LocalExecutor
from serversync.expander import DESTSERVER, expand_tokens, item_variables, split_template
from serversync.models import (
    CopyItemSpec,
    DispatchTask,
    ExternalCommand,
    FailurePolicy,
    SyncSummary,
    TaskResult,
    TaskStatus,
)
from serversync.services import ServiceController
from serversync.tasks import TaskPool, run_task

__all__ = ["SyncOrchestrator", "job_log_filename"]

logger = structlog.get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def job_log_filename(item_path: str, destination: str) -> str:
    """Unique log filename for one job-mode task.

    Format: <item-slug>-<destination>-<uuid>.log
    """
    item_slug = _UNSAFE_FILENAME_CHARS.sub("-", item_path).strip("-")[:40] or "item"
    dest_slug = _UNSAFE_FILENAME_CHARS.sub("-", destination).strip("-") or "host"
    return f"{item_slug}-{dest_slug}-{uuid.uuid4().hex}.log"


class SyncOrchestrator:
    """Distributes copy items from one source host to many destinations.

    Workflow of run():
    1. Stop services on all destinations (one batched remote call)
    2. Job mode: ensure the job log directory exists
    3. Expand each copy item's command per destination and dispatch it,
       either synchronously or as a background task
    4. Job mode: poll until every launched task has finished
    5. Start services on all destinations again

    Dry run computes and logs every command but performs none of the
    side effects above.
    """

    def __init__(
        self,
        source_server: str,
        destinations: Sequence[str],
        copy_items: Sequence[CopyItemSpec],
        *,
        services: Sequence[str] = (),
        as_job: bool = False,
        dry_run: bool = False,
        failure_policy: FailurePolicy = FailurePolicy.BEST_EFFORT,
        poll_interval: float = 5.0,
        max_parallel: int | None = None,
        job_log_dir: Path | None = None,
        executor: LocalExecutor | None = None,
        service_controller: ServiceController | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            source_server: Name of the source host, informational only
            destinations: Destination hosts, processed in the given order
            copy_items: Work items, processed in the given order
            services: Services to stop before and start after the transfer
            as_job: Run each dispatch as a background task
            dry_run: Compute and log commands without running anything
            failure_policy: Continue after a failed copy, or stop
            poll_interval: Seconds between job status polls
            max_parallel: Limit on concurrently running jobs, None for no limit
            job_log_dir: Directory for per-task job logs (required for job mode)
            executor: Runs copy commands, defaults to LocalExecutor
            service_controller: Required when services are given
        """
        if services and service_controller is None:
            raise ValueError("A service controller is required when services are given")
        if as_job and job_log_dir is None:
            raise ValueError("A job log directory is required in job mode")

        self._run_id = secrets.token_hex(4)
        self._source_server = source_server
        self._destinations = list(destinations)
        self._copy_items = list(copy_items)
        self._services = list(services)
        self._as_job = as_job
        self._dry_run = dry_run
        self._failure_policy = failure_policy
        self._poll_interval = poll_interval
        self._job_log_dir = job_log_dir
        self._executor = executor or LocalExecutor()
        self._service_controller = service_controller
        self._pool = TaskPool(self._executor, max_parallel=max_parallel)

    @property
    def run_id(self) -> str:
        return self._run_id

    async def run(self) -> SyncSummary:
        """Execute the complete sync workflow.

        Every log event emitted meanwhile, including those of the service
        controller and the task pool, carries run_id and source.

        Returns:
            SyncSummary with per-task results

        Raises:
            ServiceControlError: If stopping or starting services fails
        """
        with structlog.contextvars.bound_contextvars(run_id=self._run_id, source=self._source_server):
            return await self._run()

    async def _run(self) -> SyncSummary:
        summary = SyncSummary(
            run_id=self._run_id,
            source_server=self._source_server,
            started_at=datetime.now(UTC),
            as_job=self._as_job,
            dry_run=self._dry_run,
        )
        logger.info(
            "Starting sync",
            destinations=self._destinations,
            items=len(self._copy_items),
            as_job=self._as_job,
            dry_run=self._dry_run,
        )

        await self._stop_services()
        try:
            if self._as_job:
                self._ensure_job_log_dir()
            await self._dispatch_all(summary)
            if self._as_job:
                await self._wait_for_jobs(summary)
        except asyncio.CancelledError:
            logger.warning("Sync interrupted, terminating running commands")
            self._pool.cancel_all()
            await self._executor.terminate_running()
            raise
        except Exception as e:
            # Recorded before the restart, which may raise and replace it
            logger.error("Sync failed, restarting services", error=str(e), exc_info=True)
            raise
        finally:
            await self._start_services()

        summary.ended_at = datetime.now(UTC)
        self._log_summary(summary)
        return summary

    async def _stop_services(self) -> None:
        if not self._services:
            return
        if self._dry_run:
            logger.info("Dry run: would stop services", services=self._services, hosts=self._destinations)
            return
        assert self._service_controller is not None
        await self._service_controller.stop(self._destinations, self._services)

    async def _start_services(self) -> None:
        if not self._services:
            return
        if self._dry_run:
            logger.info("Dry run: would start services", services=self._services, hosts=self._destinations)
            return
        assert self._service_controller is not None
        await self._service_controller.start(self._destinations, self._services)

    def _ensure_job_log_dir(self) -> None:
        assert self._job_log_dir is not None
        if self._dry_run:
            return
        try:
            self._job_log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            # Creation races with concurrent runs are ignored
            logger.debug("Could not create job log directory", path=str(self._job_log_dir), error=str(e))

    def _prepare_item(self, index: int, item: CopyItemSpec) -> list[str] | None:
        """Expand the item-level placeholders, or None if the item is malformed."""
        if not item.is_valid:
            logger.warning("Skipping copy item with empty path or command", index=index, path=item.path)
            return None
        try:
            tokens = split_template(item.command)
        except ValueError as e:
            logger.warning("Skipping copy item with unparsable command", index=index, path=item.path, error=str(e))
            return None
        # One timestamp per item, shared by all of its destinations
        return expand_tokens(tokens, item_variables(item, datetime.now()))

    def build_task(self, item: CopyItemSpec, tokens: list[str], destination: str) -> DispatchTask:
        """Resolve the destination placeholder and bind the command to one destination."""
        output_path = None
        if self._as_job:
            assert self._job_log_dir is not None
            output_path = self._job_log_dir / job_log_filename(item.path, destination)
        command = ExternalCommand.from_tokens(expand_tokens(tokens, {DESTSERVER: destination}), output_path)
        return DispatchTask(item_path=item.path, destination=destination, command=command)

    async def _dispatch_all(self, summary: SyncSummary) -> None:
        for index, item in enumerate(self._copy_items):
            tokens = self._prepare_item(index, item)
            if tokens is None:
                summary.skipped_items.append(index)
                continue

            for destination in self._destinations:
                task = self.build_task(item, tokens, destination)

                if self._dry_run:
                    logger.info(
                        f"Dry run: would copy {item.path} to {destination}",
                        command=task.command.display(),
                    )
                    summary.results.append(TaskResult(task=task, status=TaskStatus.SKIPPED))
                    continue

                if self._as_job:
                    self._pool.launch(task)
                    logger.info(
                        f"Launched job for {item.path} -> {destination}",
                        log_file=str(task.log_path),
                    )
                    continue

                logger.info(f"Copying {item.path} to {destination}", command=task.command.display())
                result = await run_task(self._executor, task)
                summary.results.append(result)
                if result.status is TaskStatus.FAILED:
                    logger.error(
                        f"Copy of {item.path} to {destination} failed",
                        exit_code=result.exit_code,
                        error=result.error_message,
                    )
                    if self._failure_policy is FailurePolicy.FAIL_FAST:
                        logger.warning("Stopping after first failure (fail-fast)")
                        summary.aborted = True
                        return

    async def _wait_for_jobs(self, summary: SyncSummary) -> None:
        if not self._pool.handles:
            if not self._dry_run:
                logger.warning("Job mode requested but no jobs were launched")
            return

        def report(running: int, total: int) -> None:
            logger.info(f"Waiting for {running} of {total} job(s) to finish")

        results = await self._pool.wait_all(
            self._poll_interval,
            on_poll=report,
            stop_on_failure=self._failure_policy is FailurePolicy.FAIL_FAST,
        )
        for result in results:
            if result.failed:
                logger.error(
                    f"Job for {result.task.item_path} -> {result.task.destination} {result.status}",
                    exit_code=result.exit_code,
                    error=result.error_message,
                    log_file=str(result.task.log_path),
                )
        summary.results.extend(results)
        if any(result.status is TaskStatus.CANCELLED for result in results):
            summary.aborted = True

    def _log_summary(self, summary: SyncSummary) -> None:
        if summary.dry_run:
            logger.info(f"Dry run complete: {len(summary.previewed)} command(s) previewed")
            return
        failures = [f"{r.task.item_path} -> {r.task.destination}" for r in summary.failed]
        log_method = logger.info if summary.success else logger.error
        log_method(
            "Sync finished",
            succeeded=len(summary.succeeded),
            failed=len(summary.failed),
            skipped_items=len(summary.skipped_items),
            failures=failures,
        )
