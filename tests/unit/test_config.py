"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from serversync.config import Configuration, ConfigurationError, get_default_job_log_dir
from serversync.logger import LogLevel
from serversync.models import CopyItemSpec, FailurePolicy

FULL_CONFIG = """\
source_server: src01
destinations: [web01, web02]
copy_items:
  - path: 'c:\\inetpub'
    command: 'robocopy "%SOURCEITEM%" "%DESTINATIONITEM%" /MIR'
  - path: /srv/www
    command: rsync -a %SOURCEITEM%/ %DESTINATIONITEM%/
services: [nginx]
as_job: true
failure_policy: fail-fast
poll_interval: 0.5
max_parallel: 4
job_log_dir: /var/log/server-sync
log_file_level: info
log_cli_level: WARNING
ssh:
  username: deploy
  port: 2222
service_control:
  manager: service
  sudo: false
"""


def write_config(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")
    return path


def test_defaults() -> None:
    cfg = Configuration()

    assert cfg.destinations == []
    assert cfg.failure_policy is FailurePolicy.BEST_EFFORT
    assert cfg.poll_interval == 5.0
    assert cfg.max_parallel is None
    assert cfg.job_log_dir == get_default_job_log_dir()
    assert cfg.log_file_level == LogLevel.DEBUG
    assert cfg.log_cli_level == LogLevel.INFO
    assert cfg.ssh.port == 22
    assert cfg.service_control.sudo is True


def test_load_full_config(tmp_path: Path) -> None:
    cfg = Configuration.from_yaml(write_config(tmp_path, FULL_CONFIG))

    assert cfg.source_server == "src01"
    assert cfg.destinations == ["web01", "web02"]
    assert cfg.copy_items == [
        CopyItemSpec(path="c:\\inetpub", command='robocopy "%SOURCEITEM%" "%DESTINATIONITEM%" /MIR'),
        CopyItemSpec(path="/srv/www", command="rsync -a %SOURCEITEM%/ %DESTINATIONITEM%/"),
    ]
    assert cfg.services == ["nginx"]
    assert cfg.as_job is True
    assert cfg.failure_policy is FailurePolicy.FAIL_FAST
    assert cfg.poll_interval == 0.5
    assert cfg.max_parallel == 4
    assert cfg.job_log_dir == Path("/var/log/server-sync")
    assert cfg.log_file_level == LogLevel.INFO
    assert cfg.log_cli_level == LogLevel.WARNING
    assert cfg.ssh.username == "deploy"
    assert cfg.ssh.port == 2222
    assert cfg.service_control.manager == "service"
    assert cfg.service_control.sudo is False


def test_empty_file_gives_defaults(tmp_path: Path) -> None:
    cfg = Configuration.from_yaml(write_config(tmp_path, ""))
    assert cfg.destinations == []
    assert cfg.copy_items == []


def test_incomplete_copy_items_are_loaded_not_rejected(tmp_path: Path) -> None:
    """Malformed items are skipped at run time, so loading keeps them."""
    content = "copy_items:\n  - path: /srv/www\n  - command: rsync a b\n  - path: /etc\n    command:\n"

    cfg = Configuration.from_yaml(write_config(tmp_path, content))

    assert cfg.copy_items == [
        CopyItemSpec(path="/srv/www", command=""),
        CopyItemSpec(path="", command="rsync a b"),
        CopyItemSpec(path="/etc", command=""),
    ]
    assert not any(item.is_valid for item in cfg.copy_items)


def test_job_log_dir_expands_user(tmp_path: Path) -> None:
    cfg = Configuration.from_yaml(write_config(tmp_path, "job_log_dir: ~/sync-jobs\n"))
    assert cfg.job_log_dir == Path.home() / "sync-jobs"


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        Configuration.from_yaml(tmp_path / "nope.yaml")

    assert "Configuration file not found" in exc_info.value.errors[0].message


def test_yaml_syntax_error_reports_line(tmp_path: Path) -> None:
    path = write_config(tmp_path, "destinations: [web01\nservices: nginx\n")

    with pytest.raises(ConfigurationError) as exc_info:
        Configuration.from_yaml(path)

    assert "YAML syntax error at line" in exc_info.value.errors[0].message


@pytest.mark.parametrize(
    ("data", "error_path"),
    [
        ({"destinations": "web01"}, "destinations"),
        ({"failure_policy": "sometimes"}, "failure_policy"),
        ({"poll_interval": 0}, "poll_interval"),
        ({"max_parallel": 0}, "max_parallel"),
        ({"ssh": {"port": 70000}}, "ssh.port"),
        ({"copy_items": [{"path": "/a", "cmd": "x"}]}, "copy_items.0"),
        ({"unknown_key": True}, "root"),
    ],
)
def test_schema_violations(data: dict, error_path: str) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        Configuration.from_dict(data)

    assert error_path in [error.path for error in exc_info.value.errors]


def test_invalid_log_level() -> None:
    with pytest.raises(ConfigurationError, match="Invalid log level: LOUD"):
        Configuration.from_dict({"log_cli_level": "LOUD"})


def test_all_errors_reported_together() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        Configuration.from_dict({"destinations": 5, "as_job": "yes"})

    assert {error.path for error in exc_info.value.errors} == {"destinations", "as_job"}
