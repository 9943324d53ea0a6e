"""
Local duplex byte channel between the host and one worker.

The host creates the channel (bind + listen on a Unix domain socket with a
fresh identifier), passes the identifier to the worker on its command line,
and waits for the worker to connect. Each channel carries exactly one peer
connection and is never reused: a relaunched worker gets a new channel.
"""

import os
import socket
import tempfile
import threading
import time
import uuid
from enum import Enum
from typing import Optional

from .errors import ChannelClosedError, ChannelTimeoutError, TransportError

CHANNEL_PREFIX = "qsts-"
SOCKET_SUFFIX = ".sock"

HAS_UNIX_SOCKETS = hasattr(socket, "AF_UNIX")

# Poll interval while the worker waits for the host's endpoint to appear
_CONNECT_RETRY_INTERVAL = 0.05


class ConnectResult(Enum):
    """Outcome of waiting for the peer to connect."""

    CONNECTED = "connected"
    TIMED_OUT = "timed_out"
    ERROR = "error"


def new_identifier(directory: Optional[str] = None) -> str:
    """
    Generate a channel identifier that has never been used.

    Without a directory the identifier is a bare name living in the system
    temp directory; with one it is the absolute socket path.
    """
    name = f"{CHANNEL_PREFIX}{uuid.uuid4()}"
    if directory is None:
        return name
    return os.path.join(os.path.abspath(directory), name + SOCKET_SUFFIX)


def resolve_address(identifier: str) -> str:
    """Map a channel identifier to the filesystem path of its socket."""
    if os.path.isabs(identifier):
        return identifier
    return os.path.join(tempfile.gettempdir(), identifier + SOCKET_SUFFIX)


def _unix_socket() -> socket.socket:
    if not HAS_UNIX_SOCKETS:
        raise TransportError("Unix domain sockets are not available on this platform")
    return socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)


def _shutdown_and_close(sock: socket.socket):
    # shutdown() wakes a thread blocked in recv/accept; close() alone may not
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class Channel:
    """
    One end of a blocking duplex byte stream.

    Acts as a stream for :mod:`tripleslash.core.framing` through
    ``readinto``, ``write`` and ``flush``.
    """

    def __init__(
        self,
        identifier: str,
        listener: Optional[socket.socket] = None,
        sock: Optional[socket.socket] = None,
    ):
        self.identifier = identifier
        self.address = resolve_address(identifier)
        self._listener = listener
        self._sock = sock
        self._owns_address = listener is not None
        self._closed = False
        self._lock = threading.Lock()

    @classmethod
    def create(cls, directory: Optional[str] = None) -> "Channel":
        """
        Allocate a listening endpoint with a fresh identifier (host side).

        Raises:
            TransportError: If the endpoint cannot be bound
        """
        identifier = new_identifier(directory)
        address = resolve_address(identifier)
        listener = _unix_socket()
        try:
            listener.bind(address)
            listener.listen(1)
        except OSError as e:
            listener.close()
            raise TransportError(f"Failed to create channel at {address}: {e}") from e
        return cls(identifier, listener=listener)

    @classmethod
    def connect(cls, identifier: str, timeout: float) -> "Channel":
        """
        Connect to a channel the host created (worker side).

        Keeps retrying while the endpoint does not exist yet or refuses
        connections, until ``timeout`` seconds have passed.

        Raises:
            ChannelTimeoutError: If no connection was made in time
            TransportError: For any other connection failure
        """
        address = resolve_address(identifier)
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ChannelTimeoutError(
                    f"Timed out after {timeout}s connecting to channel {identifier}"
                )

            sock = _unix_socket()
            try:
                sock.settimeout(remaining)
                sock.connect(address)
                sock.settimeout(None)
                return cls(identifier, sock=sock)
            except (FileNotFoundError, ConnectionRefusedError):
                sock.close()
                time.sleep(min(_CONNECT_RETRY_INTERVAL, max(remaining, 0)))
            except TimeoutError as e:
                sock.close()
                raise ChannelTimeoutError(
                    f"Timed out after {timeout}s connecting to channel {identifier}"
                ) from e
            except OSError as e:
                sock.close()
                raise TransportError(f"Failed to connect to channel {identifier}: {e}") from e

    def accept_connection(self, timeout: Optional[float]) -> ConnectResult:
        """
        Block until the peer connects, the timeout elapses, or the OS fails.

        After a connection is accepted the listening endpoint is removed so
        nothing else can connect.
        """
        with self._lock:
            if self._closed:
                return ConnectResult.ERROR
            if self._sock is not None:
                return ConnectResult.CONNECTED
            listener = self._listener
        if listener is None:
            return ConnectResult.ERROR

        try:
            listener.settimeout(timeout)
            sock, _ = listener.accept()
        except TimeoutError:
            return ConnectResult.TIMED_OUT
        except OSError:
            return ConnectResult.ERROR

        sock.settimeout(None)
        with self._lock:
            if self._closed:
                sock.close()
                return ConnectResult.ERROR
            self._sock = sock
            self._listener = None

        listener.close()
        self._remove_address()
        return ConnectResult.CONNECTED

    @property
    def is_connected(self) -> bool:
        return self._sock is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def _connected_socket(self) -> socket.socket:
        sock = self._sock
        if self._closed:
            raise ChannelClosedError(f"Channel {self.identifier} is closed")
        if sock is None:
            raise ChannelClosedError(f"Channel {self.identifier} has no connected peer")
        return sock

    def set_read_timeout(self, timeout: Optional[float]):
        """Bound blocking reads (and writes) by ``timeout`` seconds; None blocks forever."""
        self._connected_socket().settimeout(timeout)

    def readinto(self, buffer) -> int:
        """Read available bytes into buffer; 0 means the peer closed the stream."""
        return self._connected_socket().recv_into(buffer)

    def write(self, data: bytes) -> int:
        """Write all of data."""
        self._connected_socket().sendall(data)
        return len(data)

    def flush(self):
        # Unix sockets are unbuffered; only validate the channel is usable
        self._connected_socket()

    def close(self):
        """Release the endpoint. Safe to call more than once and from any thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sock, listener = self._sock, self._listener

        if sock is not None:
            _shutdown_and_close(sock)
        if listener is not None:
            _shutdown_and_close(listener)
        self._remove_address()

    def _remove_address(self):
        if not self._owns_address:
            return
        try:
            os.unlink(self.address)
        except OSError:
            # already gone, or left behind as a stale file in the temp dir
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        if self._closed:
            status = "closed"
        elif self._sock is not None:
            status = "connected"
        else:
            status = "listening"
        return f"<Channel {self.identifier} {status}>"
