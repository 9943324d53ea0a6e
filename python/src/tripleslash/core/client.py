"""
Host-side request client.

Sends one method signature request at a time to the supervised worker and
blocks for the reply.
"""

import threading
from typing import Optional

from .errors import (
    ChannelTimeoutError,
    ProtocolError,
    RemoteParseError,
    TransportError,
    WorkerUnavailableError,
)
from .framing import FrameReader, write_frame
from .logging import LogEvent, StructuredLogger
from .message import (
    DEFAULT_REGISTRY,
    ErrorMessage,
    MessageRegistry,
    MethodSignatureRequest,
    MethodSignatureResponse,
)
from .metrics import Metrics


class SignatureClient:
    """
    Synchronous request/response API on top of a :class:`WorkerSupervisor`.

    Usage:
        client = SignatureClient(supervisor)
        response = client.request_method_signature("operation Foo (a : Int) : Unit { }")
        if response is not None:
            print(response.name, response.parameter_names)
    """

    def __init__(
        self,
        supervisor,
        registry: Optional[MessageRegistry] = None,
        logger: Optional[StructuredLogger] = None,
        metrics: Optional[Metrics] = None,
        request_timeout: Optional[float] = None,
    ):
        """
        Args:
            supervisor: Source of the current channel
            registry: Payload registry (the default registry when omitted)
            logger: Structured logger (the supervisor's when omitted)
            metrics: Request metrics (the supervisor's when omitted)
            request_timeout: Seconds to wait for a reply; defaults to the
                supervisor's configured request timeout (None waits forever)
        """
        self.supervisor = supervisor
        self.registry = registry or DEFAULT_REGISTRY
        self._logger = logger or getattr(supervisor, "logger", None) or StructuredLogger()
        self._metrics = metrics or getattr(supervisor, "metrics", None) or Metrics()

        if request_timeout is None:
            config = getattr(supervisor, "config", None)
            request_timeout = config.request_timeout if config is not None else None
        self.request_timeout = request_timeout

        self._lock = threading.Lock()
        self._reader = FrameReader()

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    def request_method_signature(self, signature: str) -> Optional[MethodSignatureResponse]:
        """
        Ask the worker to parse a method signature.

        Returns:
            The parsed description, or None when the worker is not connected,
            the worker reported an error, or the round trip failed.
        """
        try:
            return self.parse_method_signature(signature)
        except RemoteParseError as e:
            self._logger.warn(
                LogEvent.REQUEST_ERROR,
                f"Worker could not parse signature: {e.message}",
                error=e.message,
                error_type=e.error_type,
                stack_trace=e.stack_trace or None,
            )
        except WorkerUnavailableError as e:
            self._logger.debug(LogEvent.REQUEST_ERROR, str(e), error=str(e))
        except Exception as e:
            self._logger.error(
                LogEvent.REQUEST_ERROR,
                f"Method signature request failed: {e}",
                error=str(e),
                error_type=type(e).__name__,
            )
        return None

    def parse_method_signature(self, signature: str) -> MethodSignatureResponse:
        """
        Ask the worker to parse a method signature, raising on failure.

        Raises:
            WorkerUnavailableError: If no worker is connected, or the channel
                ended or broke during the round trip
            RemoteParseError: If the worker answered with an error
            ProtocolError: If the reply could not be decoded
        """
        channel = self.supervisor.current_channel()
        if channel is None:
            raise WorkerUnavailableError("Worker is not connected")

        with self._lock:
            start = self._metrics.start_request()
            success = False
            try:
                result = self._round_trip(channel, signature)
                success = isinstance(result, MethodSignatureResponse)
            finally:
                latency_ms = self._metrics.end_request(start, success=success)

        if isinstance(result, ErrorMessage):
            self._logger.request_end(
                latency_ms, success=False, error=result.message, error_type=result.error_type
            )
            raise RemoteParseError(result.error_type, result.message, result.stack_trace)

        self._logger.request_end(latency_ms)
        self.supervisor.record_success()
        return result

    def _round_trip(self, channel, signature: str):
        self._logger.trace(
            LogEvent.REQUEST_START,
            "Sending method signature request",
            channel_id=channel.identifier,
        )

        try:
            channel.set_read_timeout(self.request_timeout)
            write_frame(channel, self.registry.encode(MethodSignatureRequest(signature)))
            data = self._reader.read(channel)
        except ChannelTimeoutError as e:
            # A late reply would be taken as the answer to the next request
            self._logger.error(
                LogEvent.CHANNEL_TIMEOUT,
                f"No reply within {self.request_timeout}s; abandoning worker",
                channel_id=channel.identifier,
            )
            self.supervisor.abandon(channel)
            raise WorkerUnavailableError(f"Request timed out: {e}") from e
        except (TransportError, OSError) as e:
            raise WorkerUnavailableError(f"Channel failed during request: {e}") from e

        if data is None:
            raise WorkerUnavailableError("Channel ended before a reply arrived")

        result = self.registry.decode(data)
        if not isinstance(result, (MethodSignatureResponse, ErrorMessage)):
            raise ProtocolError(f"Unexpected reply of type {type(result).__name__}")
        return result
