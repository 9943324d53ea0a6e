"""
tripleslash - Method signature parsing in a supervised worker process

The host (an editor integration) hands method signatures to a separate worker
process over a local Unix domain socket and gets back a structured
description: name, parameter names, type parameter names, and whether the
callable returns a value. A crashed worker is relaunched automatically.

## Quick Start

```python
from tripleslash import WorkerSupervisor, SignatureClient, load_config

with WorkerSupervisor(config=load_config()) as supervisor:
    client = SignatureClient(supervisor)

    response = client.request_method_signature(
        "operation Foo (a : Int) : Unit { }"
    )
    if response is not None:
        print(response.name)             # Foo
        print(response.parameter_names)  # ['a']
        print(response.has_return_type)  # False
```

`request_method_signature` never raises: every failure (no worker, worker
crashed mid-request, worker could not parse the text) comes back as None.
Use `parse_method_signature` to get a typed exception instead.

### With Observability (Metrics & Logging)
```python
from tripleslash import WorkerSupervisor, StructuredLogger, default_pretty_handler

logger = StructuredLogger(handler=default_pretty_handler, component="host")
supervisor = WorkerSupervisor(logger=logger)
supervisor.start()

metrics = supervisor.metrics.snapshot()
print(f"Launches: {metrics.worker_launches}, restarts: {metrics.worker_restarts}")
```

## Architecture

- Frames: 4-byte host-endian length prefix + msgpack envelope
- Envelope: `{"type": <discriminator>, "body": <msgpack payload>}`
- WorkerSupervisor owns the worker process and its channel
- SignatureClient sends one request at a time (host side)
- RequestServer answers requests (worker side, `python -m tripleslash.worker`)
"""

from .core.supervisor import WorkerSupervisor, WorkerState
from .core.client import SignatureClient
from .core.server import RequestServer
from .core.channel import Channel
from .core.config import RestartPolicy, TripleSlashConfig, load_config
from .core.errors import (
    TripleSlashError,
    TransportError,
    ProtocolError,
    WorkerUnavailableError,
    RemoteParseError,
)
from .core.message import (
    MessageType,
    MethodSignatureRequest,
    MethodSignatureResponse,
    ErrorMessage,
)
from .core.metrics import Metrics, MetricsSnapshot
from .core.logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)
from .parser import SignatureParser, SignatureSyntaxError

__version__ = "1.0.0"
__all__ = [
    # Core
    "WorkerSupervisor",
    "WorkerState",
    "SignatureClient",
    "RequestServer",
    "Channel",
    "SignatureParser",
    # Messages
    "MessageType",
    "MethodSignatureRequest",
    "MethodSignatureResponse",
    "ErrorMessage",
    # Config
    "RestartPolicy",
    "TripleSlashConfig",
    "load_config",
    # Errors
    "TripleSlashError",
    "TransportError",
    "ProtocolError",
    "WorkerUnavailableError",
    "RemoteParseError",
    "SignatureSyntaxError",
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
]
