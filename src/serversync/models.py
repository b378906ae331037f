"""Core types and dataclasses for server-sync."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

__all__ = [
    "CommandResult",
    "ConfigError",
    "CopyItemSpec",
    "DispatchTask",
    "ExternalCommand",
    "FailurePolicy",
    "SyncSummary",
    "TaskResult",
    "TaskStatus",
]


@dataclass(frozen=True)
class CopyItemSpec:
    """One unit of work: a source path and the command template that copies it."""

    path: str
    command: str

    @property
    def is_valid(self) -> bool:
        """True when both the path and the command template are non-blank."""
        return bool(self.path and self.path.strip()) and bool(self.command and self.command.strip())


@dataclass(frozen=True)
class ExternalCommand:
    """A program invocation with an explicit argument list.

    Never passed through a shell. When output_path is set, stdout and stderr
    are both redirected to that file.
    """

    program: str
    args: tuple[str, ...] = ()
    output_path: Path | None = None

    @classmethod
    def from_tokens(cls, tokens: list[str], output_path: Path | None = None) -> ExternalCommand:
        if not tokens:
            raise ValueError("Command has no program")
        return cls(program=tokens[0], args=tuple(tokens[1:]), output_path=output_path)

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def display(self) -> str:
        """Shell-quoted rendering for logs and dry-run previews."""
        rendered = shlex.join(self.argv)
        if self.output_path is not None:
            rendered += f" > {shlex.quote(str(self.output_path))} 2>&1"
        return rendered


@dataclass(frozen=True)
class CommandResult:
    """Result of executing a command via LocalExecutor or RemoteExecutor."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class DispatchTask:
    """A fully expanded command bound to one (item, destination) pair."""

    item_path: str
    destination: str
    command: ExternalCommand

    @property
    def log_path(self) -> Path | None:
        return self.command.output_path


class TaskStatus(StrEnum):
    """State of a dispatched task."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Dry run
    CANCELLED = "cancelled"


class FailurePolicy(StrEnum):
    """What to do with remaining work once a copy command fails."""

    BEST_EFFORT = "best-effort"
    FAIL_FAST = "fail-fast"


@dataclass(frozen=True)
class TaskResult:
    """Outcome of a single dispatch."""

    task: DispatchTask
    status: TaskStatus
    exit_code: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def failed(self) -> bool:
        return self.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass(frozen=True)
class ConfigError:
    """Error from configuration loading or schema validation."""

    path: str  # JSON path to invalid value
    message: str


@dataclass
class SyncSummary:
    """Results of one orchestrator invocation."""

    run_id: str
    source_server: str
    started_at: datetime
    as_job: bool = False
    dry_run: bool = False
    results: list[TaskResult] = field(default_factory=list)
    skipped_items: list[int] = field(default_factory=list)  # Indexes of malformed copy items
    aborted: bool = False
    ended_at: datetime | None = None

    @property
    def succeeded(self) -> list[TaskResult]:
        return [r for r in self.results if r.status is TaskStatus.SUCCEEDED]

    @property
    def failed(self) -> list[TaskResult]:
        return [r for r in self.results if r.failed]

    @property
    def previewed(self) -> list[TaskResult]:
        return [r for r in self.results if r.status is TaskStatus.SKIPPED]

    @property
    def success(self) -> bool:
        return not self.failed and not self.aborted
