"""
Message payloads, the envelope that carries them, and the registry that maps
payload types to wire discriminators.

Everything is encoded with msgpack. An envelope is the map
``{"type": <int discriminator>, "body": <bin>}`` where ``body`` is the
msgpack-encoded payload map.
"""

import traceback
from dataclasses import dataclass, field, asdict
from enum import IntEnum
from typing import Any, Dict, List, Type

import msgpack

from .errors import ProtocolError, UnknownDiscriminatorError, UnregisteredTypeError


class MessageType(IntEnum):
    """Wire discriminators for the payload carried by an envelope."""

    UNKNOWN = 0
    ERROR = 1
    METHOD_SIGNATURE_REQUEST = 2
    METHOD_SIGNATURE_RESPONSE = 3


def _pack_map(data: Dict[str, Any]) -> bytes:
    return msgpack.packb(data, use_bin_type=True)


def _unpack_map(data: bytes, what: str) -> Dict[str, Any]:
    """Unpack msgpack bytes that must hold a map."""
    if not isinstance(data, (bytes, bytearray)):
        raise ProtocolError(f"Expected bytes for {what}, got {type(data).__name__}")

    try:
        unpacked = msgpack.unpackb(data, raw=False)
    except msgpack.exceptions.ExtraData as e:
        raise ProtocolError(f"{what} contains extra data: {e}") from e
    except (msgpack.exceptions.UnpackException, ValueError, TypeError) as e:
        raise ProtocolError(f"Failed to unpack {what}: {e}") from e

    if not isinstance(unpacked, dict):
        raise ProtocolError(f"Expected map for {what}, got {type(unpacked).__name__}")
    return unpacked


def _get_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key, "")
    if not isinstance(value, str):
        raise ProtocolError(f"Field '{key}' must be a string, got {type(value).__name__}")
    return value


def _get_str_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ProtocolError(f"Field '{key}' must be a list of strings")
    return list(value)


def _get_bool(data: Dict[str, Any], key: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise ProtocolError(f"Field '{key}' must be a bool, got {type(value).__name__}")
    return value


@dataclass
class MethodSignatureRequest:
    """A request to parse a method signature."""

    method_signature: str = ""

    def pack(self) -> bytes:
        return _pack_map(asdict(self))

    @classmethod
    def unpack(cls, body: bytes) -> "MethodSignatureRequest":
        data = _unpack_map(body, "method signature request")
        return cls(method_signature=_get_str(data, "method_signature"))


@dataclass
class MethodSignatureResponse:
    """
    Everything needed to document a parsed function or operation.

    ``parameter_names`` and ``type_parameter_names`` keep declaration order.
    ``has_return_type`` is False when the method returns Unit.
    """

    name: str = ""
    parameter_names: List[str] = field(default_factory=list)
    type_parameter_names: List[str] = field(default_factory=list)
    has_return_type: bool = False

    def pack(self) -> bytes:
        return _pack_map(asdict(self))

    @classmethod
    def unpack(cls, body: bytes) -> "MethodSignatureResponse":
        data = _unpack_map(body, "method signature response")
        return cls(
            name=_get_str(data, "name"),
            parameter_names=_get_str_list(data, "parameter_names"),
            type_parameter_names=_get_str_list(data, "type_parameter_names"),
            has_return_type=_get_bool(data, "has_return_type"),
        )


@dataclass
class ErrorMessage:
    """Describes a failure while handling a request."""

    error_type: str = ""
    message: str = ""
    stack_trace: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorMessage":
        """Build an error message from a caught exception."""
        return cls(
            error_type=type(exc).__name__,
            message=str(exc),
            stack_trace="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        )

    def pack(self) -> bytes:
        return _pack_map(asdict(self))

    @classmethod
    def unpack(cls, body: bytes) -> "ErrorMessage":
        data = _unpack_map(body, "error message")
        return cls(
            error_type=_get_str(data, "error_type"),
            message=_get_str(data, "message"),
            stack_trace=_get_str(data, "stack_trace"),
        )


@dataclass
class Envelope:
    """A payload body tagged with the discriminator of its type."""

    type: MessageType
    body: bytes = b""

    def pack(self) -> bytes:
        """Pack the envelope for a frame."""
        return _pack_map({"type": int(self.type), "body": bytes(self.body)})

    @classmethod
    def unpack(cls, data: bytes) -> "Envelope":
        """
        Unpack an envelope from frame bytes.

        Raises:
            UnknownDiscriminatorError: If the type is not a known discriminator
            ProtocolError: If the envelope is malformed
        """
        if len(data) == 0:
            raise ProtocolError("Empty envelope data")

        unpacked = _unpack_map(data, "envelope")
        raw_type = unpacked.get("type", int(MessageType.UNKNOWN))
        body = unpacked.get("body", b"")

        if not isinstance(raw_type, int) or isinstance(raw_type, bool):
            raise ProtocolError(f"Envelope type must be an integer, got {raw_type!r}")
        if not isinstance(body, bytes):
            raise ProtocolError(f"Envelope body must be binary, got {type(body).__name__}")

        try:
            message_type = MessageType(raw_type)
        except ValueError:
            raise UnknownDiscriminatorError(f"Unknown message type ({raw_type})") from None

        return cls(type=message_type, body=body)


class MessageRegistry:
    """
    Explicit two-way table between payload classes and discriminators.

    Registrations are made once at start-up and read-only afterwards, so the
    registry is safe to share between threads.
    """

    def __init__(self):
        self._types: Dict[type, MessageType] = {}
        self._variants: Dict[MessageType, Type[Any]] = {}

    def register(self, variant_type: Type[Any], message_type: MessageType):
        """
        Map a payload class to its discriminator.

        The class must provide ``pack()`` and a ``unpack(body)`` classmethod.

        Raises:
            ValueError: If either side is already registered
        """
        message_type = MessageType(message_type)
        if variant_type in self._types:
            raise ValueError(
                f"{variant_type.__name__} is already registered as {self._types[variant_type].name}"
            )
        if message_type in self._variants:
            raise ValueError(
                f"{message_type.name} is already registered to {self._variants[message_type].__name__}"
            )
        self._types[variant_type] = message_type
        self._variants[message_type] = variant_type

    def __contains__(self, item) -> bool:
        if isinstance(item, MessageType):
            return item in self._variants
        return item in self._types

    def message_type_of(self, variant_type: type) -> MessageType:
        """Look up the discriminator for a payload class."""
        try:
            return self._types[variant_type]
        except KeyError:
            raise UnregisteredTypeError(
                f"Can't wrap {variant_type.__name__} because it hasn't been mapped to a MessageType"
            ) from None

    def wrap(self, payload: Any) -> Envelope:
        """Wrap a payload in an envelope carrying its discriminator."""
        message_type = self.message_type_of(type(payload))
        return Envelope(type=message_type, body=payload.pack())

    def unwrap(self, envelope: Envelope) -> Any:
        """Decode the payload of an envelope according to its discriminator."""
        variant_type = self._variants.get(envelope.type)
        if variant_type is None:
            raise UnknownDiscriminatorError(
                f"No payload type registered for message type {envelope.type!r}"
            )
        return variant_type.unpack(envelope.body)

    def encode(self, payload: Any) -> bytes:
        """Wrap and pack a payload into frame bytes."""
        return self.wrap(payload).pack()

    def decode(self, data: bytes) -> Any:
        """Unpack frame bytes and unwrap the payload they carry."""
        return self.unwrap(Envelope.unpack(data))


def create_registry() -> MessageRegistry:
    """Build the registry of every payload exchanged with the worker."""
    registry = MessageRegistry()
    registry.register(ErrorMessage, MessageType.ERROR)
    registry.register(MethodSignatureRequest, MessageType.METHOD_SIGNATURE_REQUEST)
    registry.register(MethodSignatureResponse, MessageType.METHOD_SIGNATURE_RESPONSE)
    return registry


DEFAULT_REGISTRY = create_registry()
