"""
Core modules for the host/worker IPC channel.
"""

from .errors import (
    TripleSlashError,
    TransportError,
    ChannelClosedError,
    ChannelTimeoutError,
    ProtocolError,
    UnregisteredTypeError,
    UnknownDiscriminatorError,
    WorkerUnavailableError,
    RemoteParseError,
)
from .framing import FrameReader, read_frame, write_frame
from .message import (
    MessageType,
    Envelope,
    MessageRegistry,
    MethodSignatureRequest,
    MethodSignatureResponse,
    ErrorMessage,
    create_registry,
    DEFAULT_REGISTRY,
)
from .channel import Channel, ConnectResult
from .config import RestartPolicy, TripleSlashConfig, load_config, build_logger
from .supervisor import WorkerSupervisor, WorkerState
from .client import SignatureClient
from .server import RequestServer
from .metrics import Metrics, MetricsSnapshot
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
    stderr_handler,
    file_handler,
)

__all__ = [
    # Errors
    "TripleSlashError",
    "TransportError",
    "ChannelClosedError",
    "ChannelTimeoutError",
    "ProtocolError",
    "UnregisteredTypeError",
    "UnknownDiscriminatorError",
    "WorkerUnavailableError",
    "RemoteParseError",
    # Wire
    "FrameReader",
    "read_frame",
    "write_frame",
    "MessageType",
    "Envelope",
    "MessageRegistry",
    "MethodSignatureRequest",
    "MethodSignatureResponse",
    "ErrorMessage",
    "create_registry",
    "DEFAULT_REGISTRY",
    # Host / worker
    "Channel",
    "ConnectResult",
    "RestartPolicy",
    "TripleSlashConfig",
    "load_config",
    "build_logger",
    "WorkerSupervisor",
    "WorkerState",
    "SignatureClient",
    "RequestServer",
    # Metrics
    "Metrics",
    "MetricsSnapshot",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
    "stderr_handler",
    "file_handler",
]
