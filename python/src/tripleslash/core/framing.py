"""
Length-prefixed framing over a blocking byte stream.

Each frame is a 4-byte host-endian unsigned length followed by exactly that
many payload bytes. A declared length of zero is not an empty payload: it
marks the end of the channel, the same as the peer closing the stream.

Any object with ``readinto``, ``write`` and ``flush`` works as a stream; in
production that is a :class:`~tripleslash.core.channel.Channel`.
"""

import struct
from typing import Optional

from .errors import ChannelTimeoutError, TransportError

LENGTH_PREFIX = struct.Struct("=I")

# Method signatures are small; 64k is far beyond anything expected, so larger
# frames are treated as the exception and grow the buffer on demand.
DEFAULT_BUFFER_SIZE = 65535


def write_frame(stream, payload: bytes):
    """Write one frame (length prefix, then payload) and flush both writes."""
    try:
        stream.write(LENGTH_PREFIX.pack(len(payload)))
        stream.flush()
        stream.write(payload)
        stream.flush()
    except TransportError:
        raise
    except TimeoutError as e:
        raise ChannelTimeoutError(f"Timed out writing frame: {e}") from e
    except (OSError, ValueError) as e:
        raise TransportError(f"Failed to write frame: {e}") from e


class FrameReader:
    """
    Reads frames into a reusable scratch buffer.

    The buffer starts at ``buffer_size`` bytes and is replaced by one of
    exactly the declared length whenever a bigger frame arrives.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self._prefix = bytearray(LENGTH_PREFIX.size)
        self.buffer = bytearray(buffer_size)

    def read(self, stream) -> Optional[bytes]:
        """
        Read the next frame from the stream.

        Returns:
            The payload bytes, or None when the channel has ended.

        Raises:
            TransportError: If the stream fails or a frame is cut short
        """
        got = self._read_exact(stream, self._prefix, LENGTH_PREFIX.size)
        if got == 0:
            return None
        if got < LENGTH_PREFIX.size:
            raise TransportError(
                f"Channel ended inside a length prefix ({got} of {LENGTH_PREFIX.size} bytes)"
            )

        (length,) = LENGTH_PREFIX.unpack(self._prefix)
        if length == 0:
            return None

        if length > len(self.buffer):
            self.buffer = bytearray(length)

        got = self._read_exact(stream, self.buffer, length)
        if got == 0:
            return None
        if got < length:
            raise TransportError(f"Short frame: expected {length} bytes, got {got}")

        return bytes(self.buffer[:length])

    @staticmethod
    def _read_exact(stream, buffer: bytearray, count: int) -> int:
        """Fill buffer[:count] from the stream; returns the bytes actually read."""
        view = memoryview(buffer)
        total = 0
        try:
            while total < count:
                n = stream.readinto(view[total:count])
                if not n:
                    break
                total += n
        except TransportError:
            raise
        except TimeoutError as e:
            raise ChannelTimeoutError(f"Timed out reading frame: {e}") from e
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to read frame: {e}") from e
        return total


def read_frame(stream) -> Optional[bytes]:
    """Read a single frame with a one-off buffer. See :meth:`FrameReader.read`."""
    return FrameReader().read(stream)
