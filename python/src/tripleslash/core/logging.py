"""
Structured logging for the host and worker sides.

Log calls produce :class:`LogEntry` records tagged with a :class:`LogEvent`
and hand them to a pluggable handler (print JSON, print pretty, append to a
file). With no handler, nothing is logged.
"""

import json
import sys
import threading
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Optional, Dict


class LogLevel(Enum):
    """Log levels for structured logging."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    @classmethod
    def parse(cls, name: str) -> Optional["LogLevel"]:
        """
        Parse a configured level name (case-insensitive).

        Returns None for "off", which disables logging.

        Raises:
            ValueError: If the name is not a known level
        """
        normalized = name.strip().lower()
        if normalized == "off":
            return None
        if normalized == "warning":
            normalized = "warn"
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join([level.value for level in cls] + ["off"])
            raise ValueError(f"Unknown log level '{name}' (expected one of: {allowed})") from None


_LEVEL_ORDER = {
    LogLevel.TRACE: 0,
    LogLevel.DEBUG: 1,
    LogLevel.INFO: 2,
    LogLevel.WARN: 3,
    LogLevel.ERROR: 4,
    LogLevel.FATAL: 5,
}


class LogEvent(Enum):
    """Standard log events for the worker IPC."""

    # Worker lifecycle (host side)
    WORKER_SPAWN = "worker_spawn"
    WORKER_READY = "worker_ready"
    WORKER_EXIT = "worker_exit"
    WORKER_RESTART = "worker_restart"
    WORKER_DEGRADED = "worker_degraded"
    WORKER_STOP = "worker_stop"

    # Channel
    CHANNEL_CONNECT = "channel_connect"
    CHANNEL_TIMEOUT = "channel_timeout"
    CHANNEL_CLOSE = "channel_close"

    # Requests (host side)
    REQUEST_START = "request_start"
    REQUEST_END = "request_end"
    REQUEST_ERROR = "request_error"

    # Message loop (worker side)
    SERVER_START = "server_start"
    SERVER_STOP = "server_stop"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_UNKNOWN = "message_unknown"
    PARSE_ERROR = "parse_error"
    SIGNATURE_PARSED = "signature_parsed"
    WRITE_ERROR = "write_error"

    # Configuration
    CONFIG = "config"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Context
    component: Optional[str] = None
    channel_id: Optional[str] = None
    pid: Optional[int] = None
    state: Optional[str] = None

    # Timing
    duration_ms: Optional[float] = None

    # Status
    success: Optional[bool] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    stack_trace: Optional[str] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        logger = StructuredLogger(
            handler=default_pretty_handler,
            level=LogLevel.DEBUG,
            component="host",
        )
        logger.info(LogEvent.WORKER_READY, "Worker connected", pid=1234)
        logger.warn(LogEvent.WORKER_EXIT, "Worker exited", metadata={"exit_code": 1})
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: Optional[LogLevel] = LogLevel.INFO,
        component: Optional[str] = None,
    ):
        self.handler = handler
        self.level = level
        self.component = component

    def set_handler(self, handler: Optional[LogHandler]):
        """Set or update the log handler."""
        self.handler = handler

    def set_level(self, level: Optional[LogLevel]):
        """Set the minimum level; None turns logging off."""
        self.level = level

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        if self.level is None:
            return False
        return _LEVEL_ORDER[level] >= _LEVEL_ORDER[self.level]

    def log(
        self,
        event: LogEvent,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **kwargs,
    ):
        """
        Log an event with structured data.

        Args:
            event: The event type (from LogEvent enum)
            message: Human-readable message
            level: Log level (default: INFO)
            **kwargs: Additional fields for LogEntry
        """
        if not self.handler or not self._should_log(level):
            return

        kwargs.setdefault("component", self.component)
        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=message,
            **kwargs,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break the application
            print(f"Log handler error: {e}", file=sys.stderr)

    def trace(self, event: LogEvent, message: str, **kwargs):
        """Log at TRACE level."""
        self.log(event, message, level=LogLevel.TRACE, **kwargs)

    def debug(self, event: LogEvent, message: str, **kwargs):
        """Log at DEBUG level."""
        self.log(event, message, level=LogLevel.DEBUG, **kwargs)

    def info(self, event: LogEvent, message: str, **kwargs):
        """Log at INFO level."""
        self.log(event, message, level=LogLevel.INFO, **kwargs)

    def warn(self, event: LogEvent, message: str, **kwargs):
        """Log at WARN level."""
        self.log(event, message, level=LogLevel.WARN, **kwargs)

    def error(self, event: LogEvent, message: str, **kwargs):
        """Log at ERROR level."""
        self.log(event, message, level=LogLevel.ERROR, **kwargs)

    def fatal(self, event: LogEvent, message: str, **kwargs):
        """Log at FATAL level."""
        self.log(event, message, level=LogLevel.FATAL, **kwargs)

    # Convenience methods for common events

    def worker_spawn(self, pid: int, channel_id: str, attempt: int):
        """Log a worker process launch."""
        self.info(
            LogEvent.WORKER_SPAWN,
            f"Started worker process {pid}",
            pid=pid,
            channel_id=channel_id,
            metadata={"attempt": attempt},
        )

    def worker_exit(self, pid: int, exit_code: Optional[int], expected: bool):
        """Log a worker process exit."""
        level = LogLevel.INFO if expected else LogLevel.WARN
        self.log(
            LogEvent.WORKER_EXIT,
            f"Worker process {pid} exited with code {exit_code}"
            + ("" if expected else " (unexpected)"),
            level=level,
            pid=pid,
            metadata={"exit_code": exit_code, "expected": expected},
        )

    def request_end(
        self,
        duration_ms: float,
        success: bool = True,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ):
        """Log request completion."""
        event = LogEvent.REQUEST_END if success else LogEvent.REQUEST_ERROR
        level = LogLevel.DEBUG if success else LogLevel.WARN
        self.log(
            event,
            f"{'Completed' if success else 'Failed'} method signature request",
            level=level,
            duration_ms=round(duration_ms, 2),
            success=success,
            error=error,
            error_type=error_type,
        )


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stdout."""
    print(entry.to_json())


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event, entry.message]

    if entry.component:
        parts.append(f"in={entry.component}")
    if entry.pid is not None:
        parts.append(f"pid={entry.pid}")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms:.1f}ms")
    if entry.error:
        parts.append(f"error={entry.error}")

    print(" ".join(parts))


def stderr_handler(entry: LogEntry):
    """Handler that writes JSON lines to stderr."""
    print(entry.to_json(), file=sys.stderr)


def file_handler(path: str) -> LogHandler:
    """
    Create a handler that appends JSON lines to a file.

    Writes from several threads are serialized; the file is opened per
    write so the log can be rotated or deleted underneath a running process.
    """
    lock = threading.Lock()

    def handler(entry: LogEntry):
        line = entry.to_json()
        with lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    return handler
