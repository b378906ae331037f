"""Logging setup: structlog on top of stdlib logging.

Every run writes JSON lines to its own file under the logs directory and
renders the same events on the terminal. The two outputs filter levels
independently.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime
from enum import IntEnum
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

__all__ = [
    "LOG_FILE_GLOB",
    "LogLevel",
    "configure_logging",
    "generate_log_filename",
    "get_latest_log_file",
    "get_logs_directory",
    "parse_log_level",
]

LOG_FILE_GLOB = "sync-*.log"

# Libraries whose INFO output drowns the run log
_NOISY_LOGGERS = ("asyncssh",)


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


def parse_log_level(value: str) -> LogLevel:
    """Map a case-insensitive level name such as ``"info"`` to a LogLevel.

    Raises:
        ValueError: For unknown names, listing the accepted ones
    """
    name = value.strip().upper()
    if name not in LogLevel.__members__:
        choices = ", ".join(LogLevel.__members__)
        raise ValueError(f"Invalid log level: {value}. Valid levels: {choices}")
    return LogLevel[name]


def _add_hostname(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("hostname", socket.gethostname())
    return event_dict


def _pre_chain() -> list[Processor]:
    """Processors applied to structlog events and foreign stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_hostname,
        structlog.processors.StackInfoRenderer(),
    ]


def _handler(handler: logging.Handler, level: LogLevel, *renderers: Processor) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
            foreign_pre_chain=_pre_chain(),
        )
    )
    return handler


def configure_logging(log_file_level: LogLevel, log_cli_level: LogLevel, log_file_path: Path) -> None:
    """Route all logging to a JSON run log and a console renderer.

    Args:
        log_file_level: Threshold for the run log file
        log_cli_level: Threshold for terminal output
        log_file_path: Run log file, parent directories are created
    """
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    structlog.configure(
        processors=[*_pre_chain(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(
        _handler(
            logging.FileHandler(log_file_path, encoding="utf-8"),
            log_file_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        )
    )
    root.addHandler(_handler(logging.StreamHandler(), log_cli_level, structlog.dev.ConsoleRenderer(colors=True)))
    root.setLevel(min(log_file_level, log_cli_level))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def generate_log_filename(run_id: str, timestamp: datetime | None = None) -> str:
    """Run log name, ``sync-<YYYYmmddTHHMMSS>-<run_id>.log``. Sorts chronologically."""
    stamp = (timestamp or datetime.now()).strftime("%Y%m%dT%H%M%S")
    return f"sync-{stamp}-{run_id}.log"


def get_logs_directory() -> Path:
    return Path.home() / ".local" / "share" / "server-sync" / "logs"


def get_latest_log_file() -> Path | None:
    """Newest run log by name, or None when there is none yet."""
    directory = get_logs_directory()
    if not directory.is_dir():
        return None
    return max(directory.glob(LOG_FILE_GLOB), default=None)
