"""Brick client -- owns the channel and speaks the direct-command protocol.

Handles:
    - Opening the channel with a bounded retry budget
    - Treating an already-open channel as a live connection
    - Serialising every write behind one lock, so commands from the
      session loop and the heartbeat never interleave on the wire
    - Query / reply pairing for stream channels
    - Reply callback registration for endpoint channels

All retry counts and timeouts come from ``BridgeConfig.connection``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from nxt_throttle.hardware.channel import (
    Channel,
    ChannelAlreadyOpen,
    ChannelError,
    EndpointChannel,
    ReceiveCallback,
    StreamChannel,
)
from nxt_throttle.protocol.commands import (
    AxisId,
    Command,
    KeepAlive,
    PlayTone,
    QueryMotorPosition,
    ResetMotorPosition,
)
from nxt_throttle.protocol.packets import PacketCodec, ProtocolError, encode

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BrickError(Exception):
    """Base exception for brick client errors."""

    pass


class BrickConnectionError(BrickError):
    """The channel could not be opened within the retry budget."""

    pass


class BrickNotConnected(BrickError):
    """An operation needed an open connection."""

    pass


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class BrickClient:
    """Direct-command client for one brick.

    Parameters
    ----------
    channel : Channel
        Unopened channel; owned by the client from here on.
    codec : PacketCodec | None
        Reply parser.  Defaults to the length-prefixed stream layout.
    connect_attempts : int
        Open attempts before :meth:`connect` gives up.
    connect_interval : float
        Seconds to wait between attempts.

    Examples
    --------
    >>> with BrickClient(SerialChannel("COM3")) as brick:
    ...     brick.play_tone(880, 150)
    ...     ticks = brick.query_position(AxisId.THROTTLE)
    """

    def __init__(
        self,
        channel: Channel,
        codec: PacketCodec | None = None,
        connect_attempts: int = 5,
        connect_interval: float = 0.5,
    ) -> None:
        if connect_attempts < 1:
            raise ValueError(
                f"connect_attempts must be >= 1, got {connect_attempts}"
            )
        self._channel = channel
        self._codec = codec or PacketCodec()
        self.connect_attempts = connect_attempts
        self.connect_interval = connect_interval

        if isinstance(channel, StreamChannel) and not self._codec.prefixed:
            raise ValueError(
                "Stream channels deliver length-prefixed replies; "
                f"rotation_offset {self._codec.rotation_offset} does not "
                "match that layout"
            )
        if (
            isinstance(channel, EndpointChannel)
            and channel.delivers_prefixed != self._codec.prefixed
        ):
            layout = "length-prefixed" if channel.delivers_prefixed else "bare"
            raise ValueError(
                f"{type(channel).__name__} delivers {layout} replies; "
                f"rotation_offset {self._codec.rotation_offset} does not "
                "match that layout"
            )

        self._connected = False
        self._write_lock = threading.Lock()
        self._request_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def codec(self) -> PacketCodec:
        return self._codec

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_event_driven(self) -> bool:
        """``True`` when replies arrive through a receive callback."""
        return isinstance(self._channel, EndpointChannel)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the channel, retrying up to ``connect_attempts`` times.

        An already-open channel counts as success: it means a live
        connection exists.

        Raises
        ------
        BrickConnectionError
            If every attempt fails.
        """
        last_error: ChannelError | None = None
        for attempt in range(1, self.connect_attempts + 1):
            logger.info(
                "Opening brick channel (attempt %d/%d)",
                attempt,
                self.connect_attempts,
            )
            try:
                self._channel.open()
            except ChannelAlreadyOpen:
                logger.info(
                    "Channel already open, assuming existing connection"
                )
                self._connected = True
                return
            except ChannelError as exc:
                last_error = exc
                logger.warning("Connection attempt %d failed: %s", attempt, exc)
                if attempt < self.connect_attempts:
                    time.sleep(self.connect_interval)
                continue

            self._connected = True
            logger.info("Connected to brick")
            return

        raise BrickConnectionError(
            f"Failed to open brick channel after "
            f"{self.connect_attempts} attempts: {last_error}"
        )

    def disconnect(self) -> None:
        """Close the channel.  Never raises for transport errors."""
        if self.is_event_driven:
            self._channel.on_receive(None)  # type: ignore[attr-defined]
        try:
            self._channel.close()
        except ChannelError as exc:
            logger.warning("Error while closing channel: %s", exc)
        self._connected = False
        logger.info("Disconnected from brick")

    # ------------------------------------------------------------------
    # Low-level transport
    # ------------------------------------------------------------------

    def send(self, command: Command) -> None:
        """Frame and write *command*.

        Raises
        ------
        BrickNotConnected
            If :meth:`connect` has not succeeded.
        ChannelIOError
            On transport failure.
        """
        if not self._connected:
            raise BrickNotConnected("Not connected to brick")
        frame = encode(command)
        with self._write_lock:
            self._channel.write(frame)
        logger.debug("TX %s %s", type(command).__name__, frame.hex(" "))

    def discard_input(self) -> None:
        if isinstance(self._channel, StreamChannel):
            self._channel.discard_input()

    def on_reply(self, callback: ReceiveCallback | None) -> None:
        """Register the reply callback of an endpoint channel.

        Raises
        ------
        TypeError
            If the channel is a stream channel.
        """
        if not isinstance(self._channel, EndpointChannel):
            raise TypeError("Reply callbacks need an endpoint channel")
        self._channel.on_receive(callback)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def query_position(self, axis: AxisId) -> int:
        """Return the rotation count of *axis* (stream channels only).

        Stale input is flushed after an undecodable reply so the next
        query starts on a frame boundary.

        Raises
        ------
        TruncatedPacket, MalformedPacket
            If the reply is missing or unusable.
        ChannelIOError
            On transport failure.
        TypeError
            If the channel is an endpoint channel.
        """
        if not isinstance(self._channel, StreamChannel):
            raise TypeError(
                "Synchronous queries need a stream channel; use "
                "request_position() with an endpoint channel"
            )
        with self._request_lock:
            self.send(QueryMotorPosition(axis))
            try:
                packet = self._codec.read_packet(self._channel)
                reading = self._codec.decode_motor_reading(
                    packet, expected_port=axis.port,
                )
            except ProtocolError:
                self._channel.discard_input()
                raise
        return reading.rotation_count

    def request_position(self, axis: AxisId) -> None:
        """Send a position query without waiting for the reply."""
        self.send(QueryMotorPosition(axis))

    def reset_position(self, axis: AxisId) -> None:
        """Zero the rotation counter of *axis*."""
        self.send(ResetMotorPosition(axis))

    def play_tone(self, frequency_hz: int, duration_ms: int) -> None:
        self.send(PlayTone(frequency_hz, duration_ms))

    def keep_alive(self) -> None:
        """Reset the brick's sleep timer."""
        self.send(KeepAlive())

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> BrickClient:
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect()
