"""Shared fakes for the brick transport.

``FakeBrickStream`` and ``FakeBrickEndpoint`` behave like a brick on the
far end of a channel: position queries are answered from the
``positions`` mapping, every frame written is recorded for inspection.
"""

from __future__ import annotations

import struct
import threading
import time
from typing import Dict, List

import pytest

from nxt_throttle.hardware.channel import (
    ChannelAlreadyOpen,
    ChannelIOError,
    EndpointChannel,
    ReceiveCallback,
    StreamChannel,
)
from nxt_throttle.protocol.commands import DIRECT_REPLY, OP_GET_OUTPUT_STATE


# ---------------------------------------------------------------------------
# Reply builder
# ---------------------------------------------------------------------------


def motor_reply(
    port: int,
    rotation: int,
    *,
    prefixed: bool = True,
    status: int = 0,
    opcode: int = OP_GET_OUTPUT_STATE,
) -> bytes:
    """Build a motor-state reply with *rotation* at payload offset 18.

    The body is 25 bytes, so the rotation count lands 23 bytes into a
    prefixed buffer and 21 bytes into a bare one.
    """
    payload = bytes([port]) + bytes(17) + struct.pack("<i", rotation)
    body = bytes([0x02, opcode, status]) + payload
    if prefixed:
        return struct.pack("<H", len(body)) + body
    return body


def _query_port(frame: bytes) -> int | None:
    """Port of a framed position query, ``None`` for other commands."""
    body = frame[2:]
    if len(body) == 3 and body[0] == DIRECT_REPLY and body[1] == OP_GET_OUTPUT_STATE:
        return body[2]
    return None


# ---------------------------------------------------------------------------
# Stream fake
# ---------------------------------------------------------------------------


class FakeBrickStream(StreamChannel):
    """Stream channel answering queries from ``positions``.

    Parameters
    ----------
    positions : dict
        Port to rotation count.  Ports missing here are not answered.
    fail_opens : int
        Number of opens that fail with ``ChannelIOError`` before one
        succeeds.  ``-1`` fails forever.
    already_open : bool
        Every open raises ``ChannelAlreadyOpen``.
    chunk_size : int
        Largest number of bytes returned by one ``read``.
    """

    def __init__(
        self,
        positions: Dict[int, int] | None = None,
        *,
        fail_opens: int = 0,
        already_open: bool = False,
        chunk_size: int = 64,
    ) -> None:
        self.positions: Dict[int, int] = dict(positions or {})
        self.fail_opens = fail_opens
        self.already_open = already_open
        self.chunk_size = chunk_size
        self.fail_writes = False

        self.open_attempts = 0
        self.written: List[bytes] = []
        self._rx = bytearray()
        self._open = False
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self.open_attempts += 1
        if self.already_open:
            self._open = True
            raise ChannelAlreadyOpen("port is already open")
        if self.fail_opens != 0:
            if self.fail_opens > 0:
                self.fail_opens -= 1
            raise ChannelIOError("could not open port")
        self._open = True

    def close(self) -> None:
        self._open = False

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise ChannelIOError("write failed")
        with self._lock:
            self.written.append(bytes(data))
            port = _query_port(data)
            if port is not None and port in self.positions:
                self._rx.extend(motor_reply(port, self.positions[port]))

    def feed(self, data: bytes) -> None:
        """Queue raw bytes for the next reads."""
        with self._lock:
            self._rx.extend(data)

    def read(self, size: int) -> bytes:
        with self._lock:
            n = min(size, self.chunk_size, len(self._rx))
            chunk = bytes(self._rx[:n])
            del self._rx[:n]
        if not chunk:
            time.sleep(0.001)  # stands in for the port timeout
        return chunk

    def discard_input(self) -> None:
        with self._lock:
            self._rx.clear()

    def queries(self) -> List[int]:
        """Ports queried so far, in order."""
        return [p for p in map(_query_port, self.written) if p is not None]


# ---------------------------------------------------------------------------
# Endpoint fake
# ---------------------------------------------------------------------------


class FakeBrickEndpoint(EndpointChannel):
    """Endpoint channel delivering bare replies to its callback.

    With ``auto_reply`` the reply is delivered from inside ``write``;
    otherwise replies are queued until :meth:`deliver` is called.
    """

    def __init__(
        self,
        positions: Dict[int, int] | None = None,
        *,
        auto_reply: bool = True,
    ) -> None:
        self.positions: Dict[int, int] = dict(positions or {})
        self.auto_reply = auto_reply
        self.written: List[bytes] = []
        self.held: List[bytes] = []
        self.callback: ReceiveCallback | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def write(self, data: bytes) -> None:
        self.written.append(bytes(data))
        port = _query_port(data)
        if port is None or port not in self.positions:
            return
        reply = motor_reply(port, self.positions[port], prefixed=False)
        if self.auto_reply:
            self.push(reply)
        else:
            self.held.append(reply)

    def on_receive(self, callback: ReceiveCallback | None) -> None:
        self.callback = callback

    def push(self, buffer: bytes) -> None:
        if self.callback is not None:
            self.callback(buffer)

    def deliver(self) -> None:
        held, self.held = self.held, []
        for reply in held:
            self.push(reply)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stream() -> FakeBrickStream:
    return FakeBrickStream({0: 0, 1: 0, 2: 0})


@pytest.fixture
def endpoint() -> FakeBrickEndpoint:
    return FakeBrickEndpoint({0: 0, 1: 0, 2: 0})
