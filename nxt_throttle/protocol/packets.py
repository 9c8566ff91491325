"""Packet codec -- framing outgoing commands and parsing brick replies.

Wire format::

    outgoing  [lenLo][lenHi][body ...]
    reply     [lenLo][lenHi][0x02][opcode][status][payload ...]

The length prefix is little-endian and counts only the bytes after it.

Two reply layouts exist, depending on the transport:

    stream   (serial / Bluetooth)  replies keep the length prefix;
             the rotation count sits 23 bytes into the buffer.
    endpoint (USB bulk)            replies arrive as a bare body;
             the rotation count sits 21 bytes into the buffer.

The offset is an explicit :class:`PacketCodec` parameter.  Any value
other than 21 or 23 is rejected instead of being guessed.

Motor-state reply payload (offsets relative to the payload)::

    0      port
    1      power            2  mode          3  regulation mode
    4      turn ratio       5  run state
    6-9    tacho limit      10-13 tacho count
    14-17  block tacho count
    18-21  rotation count (signed, little-endian)
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nxt_throttle.protocol.commands import Command, OP_GET_OUTPUT_STATE

if TYPE_CHECKING:
    from nxt_throttle.hardware.channel import StreamChannel

logger = logging.getLogger(__name__)

LENGTH_PREFIX_SIZE = 2
REPLY_HEADER_SIZE = 3  # type, command, status
MAX_BODY_LENGTH = 64  # largest direct-command telegram the brick sends
REPLY_TYPE = 0x02

STREAM_ROTATION_OFFSET = 23
ENDPOINT_ROTATION_OFFSET = 21
VALID_ROTATION_OFFSETS = frozenset(
    {STREAM_ROTATION_OFFSET, ENDPOINT_ROTATION_OFFSET}
)

_ROTATION = struct.Struct("<i")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProtocolError(Exception):
    """Base exception for undecodable replies."""

    pass


class TruncatedPacket(ProtocolError):
    """The channel ran out of data before the declared length arrived."""

    pass


class MalformedPacket(ProtocolError):
    """A complete packet that is not a usable reply."""

    pass


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResponsePacket:
    """One reply from the brick.

    ``length`` is the number of bytes following the length prefix (for
    endpoint replies, which carry no prefix, the size of the body).
    """

    length: int
    type: int
    command: int
    status: int
    payload: bytes

    @property
    def is_reply(self) -> bool:
        return self.type == REPLY_TYPE


@dataclass(frozen=True)
class MotorReading:
    """Decoded motor-state reply."""

    port: int
    rotation_count: int


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode(command: Command) -> bytes:
    """Frame *command* as ``le16(len(body)) + body``."""
    body = command.body()
    return struct.pack("<H", len(body)) + body


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class PacketCodec:
    """Reply parser bound to one transport layout.

    Parameters
    ----------
    rotation_offset : int
        Byte offset of the rotation count from the start of a reply
        buffer: 23 for length-prefixed stream replies, 21 for bare
        endpoint replies.

    Raises
    ------
    ValueError
        If *rotation_offset* is not one of the two known layouts.
    """

    def __init__(self, rotation_offset: int = STREAM_ROTATION_OFFSET) -> None:
        if rotation_offset not in VALID_ROTATION_OFFSETS:
            raise ValueError(
                f"rotation_offset must be one of "
                f"{sorted(VALID_ROTATION_OFFSETS)}, got {rotation_offset}"
            )
        self.rotation_offset = rotation_offset

    @property
    def prefixed(self) -> bool:
        """``True`` when replies carry the two-byte length prefix."""
        return self.rotation_offset == STREAM_ROTATION_OFFSET

    @property
    def _payload_start(self) -> int:
        prefix = LENGTH_PREFIX_SIZE if self.prefixed else 0
        return prefix + REPLY_HEADER_SIZE

    def encode(self, command: Command) -> bytes:
        return encode(command)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def parse(self, buffer: bytes) -> ResponsePacket:
        """Split a complete reply buffer into its fields.

        Raises
        ------
        TruncatedPacket
            If the buffer is shorter than its declared length.
        MalformedPacket
            If the declared body is too short to hold a reply header.
        """
        if self.prefixed:
            if len(buffer) < LENGTH_PREFIX_SIZE:
                raise TruncatedPacket(
                    f"Reply of {len(buffer)} byte(s) has no length prefix"
                )
            (length,) = struct.unpack_from("<H", buffer, 0)
            body = buffer[LENGTH_PREFIX_SIZE:LENGTH_PREFIX_SIZE + length]
            if len(body) < length:
                raise TruncatedPacket(
                    f"Reply declares {length} bytes, only {len(body)} present"
                )
        else:
            body = bytes(buffer)
            length = len(body)

        if length < REPLY_HEADER_SIZE:
            raise MalformedPacket(
                f"Reply body of {length} byte(s) is shorter than its header"
            )
        return ResponsePacket(
            length=length,
            type=body[0],
            command=body[1],
            status=body[2],
            payload=bytes(body[REPLY_HEADER_SIZE:]),
        )

    def read_packet(self, channel: StreamChannel) -> ResponsePacket:
        """Read exactly one length-prefixed reply from *channel*.

        Short reads are retried until the declared length is satisfied.
        A read that returns no data (timeout or closed channel) ends the
        attempt.

        Raises
        ------
        TruncatedPacket
            If the channel runs dry before the packet is complete.
        MalformedPacket
            If the length prefix is implausibly large, or see
            :meth:`parse`.
        ValueError
            If this codec is configured for bare endpoint replies, which
            cannot be delimited on a byte stream.
        """
        if not self.prefixed:
            raise ValueError(
                "Stream reads need the length-prefixed reply layout "
                f"(rotation_offset={STREAM_ROTATION_OFFSET})"
            )
        prefix = _read_exact(channel, LENGTH_PREFIX_SIZE, "length prefix")
        (length,) = struct.unpack("<H", prefix)
        if length > MAX_BODY_LENGTH:
            raise MalformedPacket(
                f"Length prefix {length} exceeds {MAX_BODY_LENGTH}; "
                f"stream out of sync"
            )
        body = _read_exact(channel, length, "reply body")
        packet = self.parse(prefix + body)
        logger.debug("RX %s", (prefix + body).hex(" "))
        return packet

    def decode_motor_reading(
        self,
        packet: ResponsePacket,
        expected_port: int | None = None,
    ) -> MotorReading:
        """Validate a motor-state reply and extract its rotation count.

        Raises
        ------
        MalformedPacket
            If the packet is not a successful motor-state reply, is too
            short to hold the rotation count, or answers another port.
        """
        if not packet.is_reply:
            raise MalformedPacket(
                f"Packet type 0x{packet.type:02X} is not a reply"
            )
        if packet.command != OP_GET_OUTPUT_STATE:
            raise MalformedPacket(
                f"Reply to opcode 0x{packet.command:02X}, "
                f"expected 0x{OP_GET_OUTPUT_STATE:02X}"
            )
        if packet.status != 0:
            raise MalformedPacket(
                f"Brick reported status 0x{packet.status:02X}"
            )

        offset = self.rotation_offset - self._payload_start
        if len(packet.payload) < offset + _ROTATION.size:
            raise MalformedPacket(
                f"Reply payload of {len(packet.payload)} byte(s) cannot hold "
                f"a rotation count at offset {self.rotation_offset}"
            )
        port = packet.payload[0]
        if expected_port is not None and port != expected_port:
            raise MalformedPacket(
                f"Reply for port {port}, expected port {expected_port}"
            )
        (rotation,) = _ROTATION.unpack_from(packet.payload, offset)
        return MotorReading(port=port, rotation_count=rotation)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _read_exact(channel: StreamChannel, size: int, what: str) -> bytes:
    """Accumulate *size* bytes from *channel* across short reads."""
    buf = bytearray()
    while len(buf) < size:
        chunk = channel.read(size - len(buf))
        if not chunk:
            raise TruncatedPacket(
                f"Channel ran dry after {len(buf)}/{size} bytes of {what}"
            )
        buf.extend(chunk)
    return bytes(buf)
