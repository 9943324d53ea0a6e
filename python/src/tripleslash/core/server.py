"""
Worker-side message loop.

Reads one framed request at a time, dispatches it by discriminator, and
writes the framed result back. Processing errors are answered with an
:class:`ErrorMessage` and the loop keeps going; only the end of the channel
or a broken channel stops it.
"""

from typing import Any, Callable, Dict, Optional

from .errors import (
    ProtocolError,
    TransportError,
    UnknownDiscriminatorError,
    UnregisteredTypeError,
)
from .framing import FrameReader, write_frame
from .logging import LogEvent, StructuredLogger
from .message import (
    DEFAULT_REGISTRY,
    ErrorMessage,
    MessageRegistry,
    MessageType,
    MethodSignatureRequest,
)


class RequestServer:
    """
    Serves method signature requests on a connected channel.

    Usage:
        with Channel.connect(identifier, timeout=3.0) as channel:
            served = RequestServer(channel, parser=SignatureParser()).serve()

    The parser is any object with a ``parse_method_signature(text)`` method
    returning a :class:`MethodSignatureResponse` (or an :class:`ErrorMessage`).
    """

    def __init__(
        self,
        channel,
        parser=None,
        registry: Optional[MessageRegistry] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        if parser is None:
            from ..parser import SignatureParser

            parser = SignatureParser(logger=logger)

        self.channel = channel
        self.parser = parser
        self.registry = registry or DEFAULT_REGISTRY
        self.logger = logger or StructuredLogger()
        self.requests_served = 0
        self._reader = FrameReader()

        self._handlers: Dict[MessageType, Callable[[Any], Any]] = {
            MessageType.METHOD_SIGNATURE_REQUEST: self._handle_method_signature,
        }

    def serve(self) -> int:
        """
        Run until the channel ends or breaks.

        Returns:
            The number of requests answered.
        """
        channel_id = getattr(self.channel, "identifier", None)
        self.logger.info(LogEvent.SERVER_START, "Waiting for requests", channel_id=channel_id)

        while True:
            try:
                data = self._reader.read(self.channel)
            except TransportError as e:
                self.logger.warn(
                    LogEvent.CHANNEL_CLOSE,
                    f"Failed to read from channel: {e}",
                    channel_id=channel_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.channel.close()
                break

            if data is None:
                self.logger.info(
                    LogEvent.CHANNEL_CLOSE, "Channel ended", channel_id=channel_id
                )
                break

            response = self.handle_frame(data)

            try:
                write_frame(self.channel, self.registry.encode(response))
            except TransportError as e:
                self.logger.error(
                    LogEvent.WRITE_ERROR,
                    f"Failed to write response: {e}",
                    channel_id=channel_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self.channel.close()
                break

            self.requests_served += 1

        self.logger.info(
            LogEvent.SERVER_STOP,
            "Message loop stopped",
            channel_id=channel_id,
            metadata={"requests_served": self.requests_served},
        )
        return self.requests_served

    def handle_frame(self, data: bytes) -> Any:
        """Turn one request frame into the payload to send back."""
        try:
            payload = self.registry.decode(data)
        except UnknownDiscriminatorError as e:
            self.logger.warn(LogEvent.MESSAGE_UNKNOWN, str(e), error=str(e))
            return ErrorMessage.from_exception(e)
        except ProtocolError as e:
            self.logger.warn(LogEvent.MESSAGE_UNKNOWN, f"Malformed request: {e}", error=str(e))
            return ErrorMessage.from_exception(e)

        message_type = self.registry.message_type_of(type(payload))
        self.logger.trace(
            LogEvent.MESSAGE_RECEIVED,
            f"Received {message_type.name}",
            metadata={"type": int(message_type)},
        )

        handler = self._handlers.get(message_type)
        if handler is None:
            message = f"No handler for message type {message_type.name}"
            self.logger.warn(LogEvent.MESSAGE_UNKNOWN, message)
            return ErrorMessage(
                error_type=UnknownDiscriminatorError.__name__,
                message=message,
            )

        try:
            result = handler(payload)
        except Exception as e:
            self.logger.warn(
                LogEvent.PARSE_ERROR,
                f"Failed to handle {message_type.name}: {e}",
                error=str(e),
                error_type=type(e).__name__,
            )
            return ErrorMessage.from_exception(e)

        if type(result) not in self.registry:
            message = f"Handler for {message_type.name} returned unsendable {type(result).__name__}"
            self.logger.error(LogEvent.PARSE_ERROR, message)
            return ErrorMessage(error_type=UnregisteredTypeError.__name__, message=message)
        return result

    def _handle_method_signature(self, request: MethodSignatureRequest):
        return self.parser.parse_method_signature(request.method_signature)
