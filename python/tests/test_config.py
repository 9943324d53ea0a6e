"""
Tests for configuration loading and the restart policy.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from tripleslash.core.config import (
    CONFIG_ENV_VAR,
    RestartPolicy,
    TripleSlashConfig,
    build_logger,
    load_config,
)
from tripleslash.core.logging import LogEvent, LogLevel


def write_config(tmp_path, text):
    path = tmp_path / "config.toml"
    path.write_text(text, encoding="utf-8")
    return path


class TestRestartPolicy:
    """Test backoff and budget calculations."""

    def test_first_restart_is_immediate(self):
        policy = RestartPolicy()
        assert policy.delay_for(0) == 0.0
        assert policy.delay_for(1) == 0.0

    def test_exponential_backoff(self):
        policy = RestartPolicy(backoff_base=0.1, backoff_max=5.0)
        assert policy.delay_for(2) == pytest.approx(0.1)
        assert policy.delay_for(3) == pytest.approx(0.2)
        assert policy.delay_for(4) == pytest.approx(0.4)

    def test_backoff_is_capped(self):
        policy = RestartPolicy(backoff_base=1.0, backoff_max=3.0)
        assert policy.delay_for(10) == 3.0

    def test_exhausted(self):
        policy = RestartPolicy(max_attempts=2)
        assert not policy.exhausted(1)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    def test_zero_attempts_never_restarts(self):
        assert RestartPolicy(max_attempts=0).exhausted(1)


class TestDefaults:
    """Test default settings."""

    def test_defaults(self):
        config = TripleSlashConfig()
        assert config.log_level is LogLevel.INFO
        assert config.log_file is None
        assert config.parser_timeout_ms == 3000
        assert config.parser_timeout == 3.0
        assert config.request_timeout is None
        assert config.restart_policy == RestartPolicy()

    def test_policies_are_not_shared(self):
        a = TripleSlashConfig()
        b = TripleSlashConfig()
        a.restart_policy.max_attempts = 1
        assert b.restart_policy.max_attempts == 5


class TestLoadConfig:
    """Test reading config.toml."""

    def test_full_file(self, tmp_path):
        path = write_config(
            tmp_path,
            """
[Logging]
log-level = "debug"
log-file = "parser.log"

[Parser]
parser-timeout = 500
request-timeout = 2500
max-restart-attempts = 2
restart-backoff = 50
restart-backoff-max = 400
""",
        )
        config = load_config(str(path))

        assert config.log_level is LogLevel.DEBUG
        assert config.log_file == "parser.log"
        assert config.parser_timeout == 0.5
        assert config.request_timeout == 2.5
        assert config.restart_policy.max_attempts == 2
        assert config.restart_policy.backoff_base == pytest.approx(0.05)
        assert config.restart_policy.backoff_max == pytest.approx(0.4)

    def test_directory_path(self, tmp_path):
        write_config(tmp_path, '[Parser]\nparser-timeout = 1234\n')
        assert load_config(str(tmp_path)).parser_timeout_ms == 1234

    def test_missing_file(self, tmp_path):
        config = load_config(str(tmp_path / "nope.toml"))
        assert config == TripleSlashConfig()

    def test_partial_file(self, tmp_path):
        path = write_config(tmp_path, '[Logging]\nlog-level = "warning"\n')
        config = load_config(str(path))
        assert config.log_level is LogLevel.WARN
        assert config.parser_timeout_ms == 3000

    def test_off_disables_logging(self, tmp_path):
        path = write_config(tmp_path, '[Logging]\nlog-level = "OFF"\n')
        assert load_config(str(path)).log_level is None

    def test_environment_variable(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, '[Parser]\nparser-timeout = 42\n')
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_config().parser_timeout_ms == 42

    def test_no_environment_variable(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert load_config() == TripleSlashConfig()

    def test_invalid_toml(self, tmp_path):
        path = write_config(tmp_path, "[Parser\nparser-timeout = ")
        with pytest.raises(ValueError, match="Invalid config file"):
            load_config(str(path))

    @pytest.mark.parametrize(
        "text, key",
        [
            ('[Parser]\nparser-timeout = 0\n', "parser-timeout"),
            ('[Parser]\nparser-timeout = "fast"\n', "parser-timeout"),
            ('[Parser]\nrequest-timeout = -1\n', "request-timeout"),
            ('[Parser]\nmax-restart-attempts = true\n', "max-restart-attempts"),
            ('[Parser]\nrestart-backoff = -5\n', "restart-backoff"),
            ('[Logging]\nlog-level = "loud"\n', "log-level"),
            ('Parser = 3\n', "Parser"),
        ],
    )
    def test_invalid_values(self, tmp_path, text, key):
        path = write_config(tmp_path, text)
        with pytest.raises(ValueError, match=key):
            load_config(str(path))


class TestBuildLogger:
    """Test logger construction from config."""

    def test_uses_handler(self):
        entries = []
        config = TripleSlashConfig(log_level=LogLevel.WARN)
        logger = build_logger(config, "worker", handler=entries.append)

        logger.info(LogEvent.CONFIG, "hidden")
        logger.warn(LogEvent.CONFIG, "shown")

        assert [e.message for e in entries] == ["shown"]
        assert entries[0].component == "worker"

    def test_log_file_wins(self, tmp_path):
        log_path = tmp_path / "worker.log"
        entries = []
        config = TripleSlashConfig(log_file=str(log_path))
        logger = build_logger(config, "worker", handler=entries.append)

        logger.info(LogEvent.CONFIG, "to file")

        assert entries == []
        assert "to file" in log_path.read_text(encoding="utf-8")
