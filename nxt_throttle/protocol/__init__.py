"""Brick direct-command protocol: command vocabulary and packet codec."""

from nxt_throttle.protocol.commands import (
    AxisId,
    Command,
    KeepAlive,
    PlayTone,
    QueryMotorPosition,
    ResetMotorPosition,
)
from nxt_throttle.protocol.packets import (
    MalformedPacket,
    MotorReading,
    PacketCodec,
    ProtocolError,
    ResponsePacket,
    TruncatedPacket,
    encode,
)

__all__ = [
    "AxisId",
    "Command",
    "KeepAlive",
    "MalformedPacket",
    "MotorReading",
    "PacketCodec",
    "PlayTone",
    "ProtocolError",
    "QueryMotorPosition",
    "ResetMotorPosition",
    "ResponsePacket",
    "TruncatedPacket",
    "encode",
]
