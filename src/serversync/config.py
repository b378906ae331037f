"""Configuration file handling for server-sync.

The YAML file is checked against ``schemas/config-schema.yaml`` before any
value is used, so every problem in a file is reported in one go.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cache
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from serversync.logger import LogLevel, parse_log_level
from serversync.models import ConfigError, CopyItemSpec, FailurePolicy

__all__ = [
    "Configuration",
    "ConfigurationError",
    "SSHConfig",
    "ServiceControlConfig",
    "get_default_job_log_dir",
]

SCHEMA_PATH = Path(__file__).parent / "schemas" / "config-schema.yaml"


def get_default_job_log_dir() -> Path:
    return Path.home() / ".local" / "share" / "server-sync" / "jobs"


class ConfigurationError(Exception):
    """The configuration file is missing, unparsable or violates the schema."""

    def __init__(self, errors: list[ConfigError]) -> None:
        self.errors = errors
        details = "\n".join(f"  {error.path}: {error.message}" for error in errors)
        super().__init__(f"Invalid configuration ({len(errors)} error(s)):\n{details}")


@dataclass
class SSHConfig:
    """Connection settings for reaching destinations during service control."""

    username: str | None = None  # None = ~/.ssh/config or local user
    port: int = 22
    connect_timeout: float | None = 30
    known_hosts: str | None = None  # None = asyncssh default (~/.ssh/known_hosts)


@dataclass
class ServiceControlConfig:
    manager: str = "systemctl"
    sudo: bool = True


@dataclass
class Configuration:
    """Settings for one sync run. CLI options are applied on top of these."""

    source_server: str | None = None  # None = local host name
    destinations: list[str] = field(default_factory=list)
    copy_items: list[CopyItemSpec] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    as_job: bool = False
    dry_run: bool = False
    failure_policy: FailurePolicy = FailurePolicy.BEST_EFFORT
    poll_interval: float = 5.0  # Seconds between job status polls
    max_parallel: int | None = None  # None = no limit on concurrent jobs
    job_log_dir: Path = field(default_factory=get_default_job_log_dir)
    log_file_level: LogLevel = LogLevel.DEBUG
    log_cli_level: LogLevel = LogLevel.INFO
    ssh: SSHConfig = field(default_factory=SSHConfig)
    service_control: ServiceControlConfig = field(default_factory=ServiceControlConfig)

    @classmethod
    def get_default_config_path(cls) -> Path:
        return Path.home() / ".config" / "server-sync" / "config.yaml"

    @classmethod
    def from_yaml(cls, path: Path) -> Configuration:
        """Read path and build a validated Configuration. An empty file yields defaults.

        Raises:
            ConfigurationError: File missing, YAML syntax error, or schema violations
        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigurationError(
                [ConfigError(path=str(path), message=f"Configuration file not found: {path}")]
            ) from None

        try:
            data = yaml.safe_load(text)
        except yaml.MarkedYAMLError as e:
            mark = e.problem_mark
            message = str(e)
            if mark is not None:
                message = f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {e.problem}"
            raise ConfigurationError([ConfigError(path=str(path), message=message)]) from e
        except yaml.YAMLError as e:
            raise ConfigurationError([ConfigError(path=str(path), message=str(e))]) from e

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        """Build a Configuration from already parsed YAML data.

        Raises:
            ConfigurationError: Listing every schema violation and bad log level
        """
        errors = _schema_errors(data)
        if errors:
            raise ConfigurationError(errors)

        levels: dict[str, LogLevel] = {}
        for key, default in (("log_file_level", "DEBUG"), ("log_cli_level", "INFO")):
            try:
                levels[key] = parse_log_level(data.get(key, default))
            except ValueError as e:
                errors.append(ConfigError(path=key, message=str(e)))
        if errors:
            raise ConfigurationError(errors)

        job_log_dir = data.get("job_log_dir")
        return cls(
            source_server=data.get("source_server"),
            destinations=list(data.get("destinations", [])),
            copy_items=[
                CopyItemSpec(path=raw.get("path") or "", command=raw.get("command") or "")
                for raw in data.get("copy_items", [])
            ],
            services=list(data.get("services", [])),
            as_job=data.get("as_job", False),
            dry_run=data.get("dry_run", False),
            failure_policy=FailurePolicy(data.get("failure_policy", FailurePolicy.BEST_EFFORT)),
            poll_interval=data.get("poll_interval", 5.0),
            max_parallel=data.get("max_parallel"),
            job_log_dir=Path(job_log_dir).expanduser() if job_log_dir else get_default_job_log_dir(),
            ssh=SSHConfig(**data.get("ssh", {})),
            service_control=ServiceControlConfig(**data.get("service_control", {})),
            **levels,
        )


@cache
def _schema() -> dict[str, Any]:
    with SCHEMA_PATH.open(encoding="utf-8") as f:
        return yaml.safe_load(f)


def _schema_errors(data: Any) -> list[ConfigError]:
    validator = jsonschema.Draft7Validator(_schema())
    return [
        ConfigError(path=".".join(str(part) for part in error.absolute_path) or "root", message=error.message)
        for error in sorted(validator.iter_errors(data), key=lambda error: list(map(str, error.absolute_path)))
    ]
