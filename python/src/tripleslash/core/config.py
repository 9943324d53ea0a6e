"""
Configuration loaded from a ``config.toml`` file.

Example:

    [Logging]
    log-level = "info"
    log-file = "parser.log"

    [Parser]
    parser-timeout = 3000
    request-timeout = 0
    max-restart-attempts = 5
    restart-backoff = 100
    restart-backoff-max = 5000

Every setting is optional; a missing file or key falls back to the default.
"""

import os
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .logging import LogHandler, LogLevel, StructuredLogger, file_handler

CONFIG_ENV_VAR = "TRIPLESLASH_CONFIG"
CONFIG_FILE_NAME = "config.toml"


@dataclass
class RestartPolicy:
    """
    Bounds automatic worker relaunches.

    The first relaunch after a stable run happens immediately. Each further
    consecutive failure waits ``backoff_base * 2 ** (n - 2)`` seconds, capped
    at ``backoff_max``. After ``max_attempts`` consecutive failures the
    supervisor stops relaunching. A worker that stays up for
    ``stable_after`` seconds, or answers a request, resets the count.
    """

    max_attempts: int = 5
    backoff_base: float = 0.1
    backoff_max: float = 5.0
    stable_after: float = 10.0

    def delay_for(self, failures: int) -> float:
        """Seconds to wait before the relaunch that follows ``failures`` consecutive failures."""
        if failures <= 1:
            return 0.0
        return min(self.backoff_max, self.backoff_base * (2 ** (failures - 2)))

    def exhausted(self, failures: int) -> bool:
        return failures > self.max_attempts


@dataclass
class TripleSlashConfig:
    """Settings shared by the host and the worker."""

    log_level: Optional[LogLevel] = LogLevel.INFO
    log_file: Optional[str] = None

    # Milliseconds to wait for the worker to connect to the host's channel
    parser_timeout_ms: int = 3000

    # Milliseconds to wait for a response; 0 waits forever
    request_timeout_ms: int = 0

    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)

    @property
    def parser_timeout(self) -> float:
        """Connect timeout in seconds."""
        return self.parser_timeout_ms / 1000.0

    @property
    def request_timeout(self) -> Optional[float]:
        """Per-request timeout in seconds, or None when disabled."""
        if self.request_timeout_ms <= 0:
            return None
        return self.request_timeout_ms / 1000.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TripleSlashConfig":
        """
        Build a config from parsed TOML tables.

        Raises:
            ValueError: If a setting has the wrong type or an invalid value
        """
        logging_section = _section(data, "Logging")
        parser_section = _section(data, "Parser")

        config = cls()

        level_name = _get(logging_section, "Logging", "log-level", str)
        if level_name is not None:
            try:
                config.log_level = LogLevel.parse(level_name)
            except ValueError as e:
                raise ValueError(f"Logging.log-level: {e}") from None

        log_file = _get(logging_section, "Logging", "log-file", str)
        if log_file:
            config.log_file = log_file

        timeout = _get(parser_section, "Parser", "parser-timeout", int)
        if timeout is not None:
            if timeout <= 0:
                raise ValueError("Parser.parser-timeout must be a positive number of milliseconds")
            config.parser_timeout_ms = timeout

        request_timeout = _get(parser_section, "Parser", "request-timeout", int)
        if request_timeout is not None:
            if request_timeout < 0:
                raise ValueError("Parser.request-timeout must not be negative")
            config.request_timeout_ms = request_timeout

        policy = config.restart_policy
        attempts = _get(parser_section, "Parser", "max-restart-attempts", int)
        if attempts is not None:
            if attempts < 0:
                raise ValueError("Parser.max-restart-attempts must not be negative")
            policy.max_attempts = attempts

        backoff = _get(parser_section, "Parser", "restart-backoff", int)
        if backoff is not None:
            if backoff < 0:
                raise ValueError("Parser.restart-backoff must not be negative")
            policy.backoff_base = backoff / 1000.0

        backoff_max = _get(parser_section, "Parser", "restart-backoff-max", int)
        if backoff_max is not None:
            if backoff_max < 0:
                raise ValueError("Parser.restart-backoff-max must not be negative")
            policy.backoff_max = backoff_max / 1000.0

        return config


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ValueError(f"[{name}] must be a table")
    return section


def _get(section: Dict[str, Any], section_name: str, key: str, kind: type):
    if key not in section:
        return None
    value = section[key]
    # bool is an int subclass; reject it for numeric settings
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(
            f"{section_name}.{key} must be of type {kind.__name__}, got {type(value).__name__}"
        )
    return value


def load_config(path: Optional[str] = None) -> TripleSlashConfig:
    """
    Load configuration from a TOML file.

    Args:
        path: A config file, or a directory containing ``config.toml``.
              Defaults to the ``TRIPLESLASH_CONFIG`` environment variable.

    Returns:
        The parsed config, or the defaults when no file exists.

    Raises:
        ValueError: If the file is not valid TOML or holds invalid settings
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return TripleSlashConfig()

    if os.path.isdir(path):
        path = os.path.join(path, CONFIG_FILE_NAME)
    if not os.path.exists(path):
        return TripleSlashConfig()

    with open(path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config file {path}: {e}") from e

    return TripleSlashConfig.from_dict(data)


def build_logger(
    config: TripleSlashConfig,
    component: str,
    handler: Optional[LogHandler] = None,
) -> StructuredLogger:
    """
    Create a logger honoring the configured level and log file.

    A configured log file wins over ``handler``.
    """
    if config.log_file:
        handler = file_handler(config.log_file)
    return StructuredLogger(handler=handler, level=config.log_level, component=component)
