"""
Exception types shared by the host and worker sides of the IPC channel.
"""


class TripleSlashError(Exception):
    """Base class for all tripleslash errors."""


class TransportError(TripleSlashError):
    """Raised when reading or writing the underlying byte stream fails."""


class ChannelClosedError(TransportError):
    """Raised for I/O on a channel that has been closed."""


class ChannelTimeoutError(TransportError):
    """Raised when connecting to or reading from a channel times out."""


class ProtocolError(TripleSlashError):
    """Raised for envelopes or payloads that cannot be decoded."""


class UnregisteredTypeError(ProtocolError):
    """Raised when wrapping a payload whose type has no discriminator."""


class UnknownDiscriminatorError(ProtocolError):
    """Raised when unwrapping an envelope with an unregistered discriminator."""


class WorkerUnavailableError(TripleSlashError):
    """Raised when no connected worker could answer a request."""


class RemoteParseError(TripleSlashError):
    """Raised when the worker answers a request with an error message."""

    def __init__(self, error_type: str, message: str, stack_trace: str = ""):
        """
        Args:
            error_type: Exception class name reported by the worker
            message: Exception message reported by the worker
            stack_trace: Formatted traceback from the worker, if any
        """
        self.error_type = error_type
        self.message = message
        self.stack_trace = stack_trace
        super().__init__(f"Worker failed to parse signature: {error_type} - {message}")
