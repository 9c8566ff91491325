"""Direct commands understood by the brick.

Every command is an immutable, slotted dataclass that knows its own
opcode and payload bytes (the *body*).  Framing -- the two-byte length
prefix -- is added by :func:`nxt_throttle.protocol.packets.encode`, never
here.

Body layouts::

    QueryMotorPosition   00 06 <port>                  (reply expected)
    ResetMotorPosition   80 0A <port> 00               (no reply)
    PlayTone             80 03 <fLo> <fHi> <dLo> <dHi> (no reply)
    KeepAlive            80 0D                         (no reply)

The first byte selects the reply behaviour: ``0x00`` asks the brick to
answer, ``0x80`` tells it not to.
"""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

# ---------------------------------------------------------------------------
# Opcodes
# ---------------------------------------------------------------------------

DIRECT_REPLY = 0x00
DIRECT_NO_REPLY = 0x80

OP_PLAY_TONE = 0x03
OP_GET_OUTPUT_STATE = 0x06
OP_RESET_MOTOR_POSITION = 0x0A
OP_KEEP_ALIVE = 0x0D


# ---------------------------------------------------------------------------
# Axes
# ---------------------------------------------------------------------------


class AxisId(Enum):
    """The three levers, each wired to one output port of the brick."""

    THROTTLE = 0
    PITCH = 1
    YAW = 2

    @property
    def port(self) -> int:
        """Output port index used on the wire."""
        return self.value

    @classmethod
    def from_port(cls, port: int) -> AxisId:
        """Return the axis wired to *port*.

        Raises
        ------
        ValueError
            If no axis uses *port*.
        """
        return cls(port)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Command(ABC):
    """Base class for all direct commands."""

    expects_reply = False

    @abstractmethod
    def body(self) -> bytes:
        """Opcode and payload bytes, without the length prefix."""


@dataclass(frozen=True, slots=True)
class QueryMotorPosition(Command):
    """Ask for the output state of one motor (includes rotation count).

    Parameters
    ----------
    axis : AxisId
        Axis whose port is queried.
    """

    axis: AxisId

    expects_reply = True

    def body(self) -> bytes:
        return bytes((DIRECT_REPLY, OP_GET_OUTPUT_STATE, self.axis.port))


@dataclass(frozen=True, slots=True)
class ResetMotorPosition(Command):
    """Zero the absolute rotation counter of one motor.

    Parameters
    ----------
    axis : AxisId
        Axis whose port is reset.
    """

    axis: AxisId

    def body(self) -> bytes:
        # Trailing 0x00: reset the absolute position, not the relative one.
        return bytes(
            (DIRECT_NO_REPLY, OP_RESET_MOTOR_POSITION, self.axis.port, 0x00)
        )


@dataclass(frozen=True, slots=True)
class PlayTone(Command):
    """Beep through the brick's speaker.

    Parameters
    ----------
    frequency_hz : int
        Tone frequency, 1..65535 Hz.
    duration_ms : int
        Tone length, 1..65535 ms.
    """

    frequency_hz: int
    duration_ms: int

    def __post_init__(self) -> None:
        for name in ("frequency_hz", "duration_ms"):
            value = getattr(self, name)
            if not 0 < value <= 0xFFFF:
                raise ValueError(f"{name} must be in 1..65535, got {value}")

    def body(self) -> bytes:
        return bytes((DIRECT_NO_REPLY, OP_PLAY_TONE)) + struct.pack(
            "<HH", self.frequency_hz, self.duration_ms,
        )


@dataclass(frozen=True, slots=True)
class KeepAlive(Command):
    """Reset the brick's sleep timer.  Sent without requesting a reply."""

    def body(self) -> bytes:
        return bytes((DIRECT_NO_REPLY, OP_KEEP_ALIVE))
