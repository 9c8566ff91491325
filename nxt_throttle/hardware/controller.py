"""Throttle controller -- the interface the host application drives.

Typical sequence (each step is one button press in a UI)::

    ctl = ThrottleController.from_config(load_config(), on_update=sink)
    ctl.begin_setup()          # connect; levers fully back
    ctl.calibrate_backward()   # zero the rotation counters
    ctl.calibrate_forward()    # levers fully forward; read the extremes
    ctl.start_session()        # readings flow, heartbeat armed
    ctl.get_axis_percent(AxisId.THROTTLE)
    ctl.stop_session()
    ctl.disconnect()

Calling :meth:`begin_setup` again from ``READY`` drops the connection,
reconnects and restarts calibration.  There is no automatic reconnect
mid-session; recovery is always that user-triggered cycle.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from nxt_throttle.calibration.decoder import (
    DEFAULT_DEAD_ZONE_PERCENT,
    NO_READING,
)
from nxt_throttle.calibration.engine import (
    DEFAULT_LEEWAY_TICKS,
    CalibrationEngine,
    IllegalTransition,
    SessionState,
)
from nxt_throttle.configs.loader import BridgeConfig
from nxt_throttle.hardware.brick_client import BrickClient
from nxt_throttle.hardware.channel import (
    Channel,
    ChannelError,
    ReaderThreadChannel,
    SerialChannel,
)
from nxt_throttle.hardware.heartbeat import Heartbeat
from nxt_throttle.hardware.session import SessionLoop, SessionMode, UpdateSink
from nxt_throttle.protocol.commands import AxisId
from nxt_throttle.protocol.packets import (
    STREAM_ROTATION_OFFSET,
    PacketCodec,
    ProtocolError,
)

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[], Channel]


class ThrottleController:
    """Connection, calibration and session control for one brick.

    Parameters
    ----------
    channel_factory : callable
        Returns a fresh, unopened channel.  Called on every connect.
    codec : PacketCodec | None
        Reply layout matching the channels the factory produces.
    leeway_ticks : int
        Calibration leeway.
    dead_zone_percent : float
        Throttle dead zone.
    poll_interval_s : float
        Pause between session iterations.
    heartbeat_interval_s : float
        Keep-alive period.
    heartbeat_enabled : bool
        Arm the heartbeat with the session.
    connect_attempts : int
        Channel open attempts per connect.
    connect_interval_s : float
        Pause between open attempts.
    on_update : callable | None
        ``on_update(axis, percent)`` sink for changed percentages.
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        *,
        codec: PacketCodec | None = None,
        leeway_ticks: int = DEFAULT_LEEWAY_TICKS,
        dead_zone_percent: float = DEFAULT_DEAD_ZONE_PERCENT,
        poll_interval_s: float = 0.005,
        heartbeat_interval_s: float = 60.0,
        heartbeat_enabled: bool = True,
        connect_attempts: int = 5,
        connect_interval_s: float = 0.5,
        on_update: UpdateSink | None = None,
    ) -> None:
        self._channel_factory = channel_factory
        self._codec = codec or PacketCodec()
        self.dead_zone_percent = dead_zone_percent
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.heartbeat_enabled = heartbeat_enabled
        self.connect_attempts = connect_attempts
        self.connect_interval_s = connect_interval_s
        self.on_update = on_update

        self._engine = CalibrationEngine(leeway_ticks=leeway_ticks)
        self._client: BrickClient | None = None
        self._session: SessionLoop | None = None
        self._heartbeat: Heartbeat | None = None

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        *,
        channel_factory: ChannelFactory | None = None,
        event_mode: bool = False,
        on_update: UpdateSink | None = None,
    ) -> ThrottleController:
        """Build a controller for the serial port named in *config*.

        Parameters
        ----------
        config : BridgeConfig
            Loaded configuration.
        channel_factory : callable | None
            Overrides the serial channel (e.g. an endpoint transport).
        event_mode : bool
            Wrap the serial channel in a background reader so replies
            arrive as events instead of being polled.
        on_update : callable | None
            Change sink.

        Raises
        ------
        ValueError
            If *event_mode* is combined with the bare-reply offset.
        """
        if (
            event_mode
            and channel_factory is None
            and config.protocol.rotation_offset != STREAM_ROTATION_OFFSET
        ):
            raise ValueError(
                "Event mode over a serial port delivers length-prefixed "
                f"replies; protocol.rotation_offset must be "
                f"{STREAM_ROTATION_OFFSET}, got {config.protocol.rotation_offset}"
            )
        conn = config.connection

        def serial_factory() -> Channel:
            channel = SerialChannel(
                conn.port,
                baudrate=conn.baudrate,
                timeout=conn.timeout_s,
                write_timeout=conn.write_timeout_s,
            )
            return ReaderThreadChannel(channel) if event_mode else channel

        return cls(
            channel_factory or serial_factory,
            codec=PacketCodec(config.protocol.rotation_offset),
            leeway_ticks=config.calibration.leeway_ticks,
            dead_zone_percent=config.calibration.throttle_dead_zone_percent,
            poll_interval_s=config.session.poll_interval_s,
            heartbeat_interval_s=config.heartbeat.interval_s,
            heartbeat_enabled=config.heartbeat.enabled,
            connect_attempts=conn.connect_attempts,
            connect_interval_s=conn.connect_interval_s,
            on_update=on_update,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._engine.state

    @property
    def engine(self) -> CalibrationEngine:
        return self._engine

    @property
    def client(self) -> BrickClient | None:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    @property
    def mode(self) -> SessionMode | None:
        return self._session.mode if self._session is not None else None

    @property
    def session_running(self) -> bool:
        return self._session is not None and self._session.is_running

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open a fresh channel.  No-op while connected.

        Raises
        ------
        BrickConnectionError
            If the channel cannot be opened within the retry budget.
        """
        if self.is_connected:
            return
        client = BrickClient(
            self._channel_factory(),
            self._codec,
            connect_attempts=self.connect_attempts,
            connect_interval=self.connect_interval_s,
        )
        client.connect()

        self._client = client
        self._engine.reset()
        self._session = SessionLoop(
            client,
            self._engine,
            poll_interval_s=self.poll_interval_s,
            dead_zone_percent=self.dead_zone_percent,
            on_update=self._emit,
        )
        self._heartbeat = Heartbeat(client.keep_alive, self.heartbeat_interval_s)

    def disconnect(self) -> None:
        """Stop everything and close the channel."""
        self.stop_session()
        if self._session is not None:
            self._session.detach()
        if self._client is not None:
            self._client.disconnect()
        self._client = None
        self._session = None
        self._heartbeat = None
        self._engine.reset()

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def begin_setup(self) -> None:
        """Connect (reconnecting from ``READY``) and restart calibration."""
        if self._engine.state is SessionState.READY and self._client is not None:
            logger.info("Recalibration requested, reconnecting")
            self.disconnect()
        if not self.is_connected:
            self.connect()
        self.stop_session()
        self._engine.begin_setup()
        self._session.clear()  # type: ignore[union-attr]

    def calibrate_backward(self) -> None:
        """Zero every rotation counter (levers fully back).

        Raises
        ------
        IllegalTransition
            Unless awaiting the backward step.
        ChannelIOError
            If a reset could not be sent; the step may be retried.
        """
        self._engine.require(SessionState.AWAITING_BACKWARD, "calibrate_backward")
        for axis in self._engine.axes:
            self._client.reset_position(axis)  # type: ignore[union-attr]
        self._session.clear()  # type: ignore[union-attr]
        self._engine.complete_backward()

    def calibrate_forward(self) -> None:
        """Read every forward extreme (levers fully forward).

        With a stream channel the readings are taken here; an axis whose
        query fails stays pending and is calibrated from its first
        session reading.  With an endpoint channel every axis is pending
        and the receive path completes the calibration.

        Raises
        ------
        IllegalTransition
            Unless awaiting the forward step.
        """
        self._engine.require(SessionState.AWAITING_FORWARD, "calibrate_forward")
        # A connection always exists past IDLE.
        client: BrickClient = self._client  # type: ignore[assignment]
        session: SessionLoop = self._session  # type: ignore[assignment]

        if session.mode is SessionMode.EVENT:
            # Enter READY first so a fast reply finds its axis pending.
            self._engine.complete_forward(pending=self._engine.axes)
            for axis in self._engine.axes:
                try:
                    client.request_position(axis)
                except ChannelError as exc:
                    logger.warning(
                        "Forward query for %s failed: %s", axis.name, exc,
                    )
            return

        pending: list[AxisId] = []
        for axis in self._engine.axes:
            try:
                raw = client.query_position(axis)
            except (ChannelError, ProtocolError) as exc:
                logger.warning(
                    "Forward reading for %s failed (%s); will use the "
                    "first session reading",
                    axis.name, exc,
                )
                pending.append(axis)
                continue
            self._engine.apply_forward_reading(axis, raw)
            session.record(axis, raw)
        self._engine.complete_forward(pending=pending)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def start_session(self) -> None:
        """Start the reading loop and arm the heartbeat.

        Raises
        ------
        IllegalTransition
            If not connected.
        """
        if self._session is None or not self.is_connected:
            raise IllegalTransition("start_session() requires a connection")
        self._session.start()
        if self.heartbeat_enabled and self._heartbeat is not None:
            self._heartbeat.arm()

    def stop_session(self) -> None:
        """Disarm the heartbeat and stop the reading loop."""
        if self._heartbeat is not None:
            self._heartbeat.disarm()
        if self._session is not None:
            self._session.stop()

    def get_axis_percent(self, axis: AxisId) -> float:
        """Last known percentage of *axis*, or ``NO_READING`` (-1)."""
        if self._session is None:
            return NO_READING
        return self._session.percent(axis)

    def beep(self, frequency_hz: int, duration_ms: int) -> None:
        """Play a tone on the brick."""
        if self._client is None:
            raise IllegalTransition("beep() requires a connection")
        self._client.play_tone(frequency_hz, duration_ms)

    def _emit(self, axis: AxisId, percent: float) -> None:
        if self.on_update is not None:
            self.on_update(axis, percent)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> ThrottleController:
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect()
