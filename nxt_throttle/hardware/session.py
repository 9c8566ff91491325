"""Session loop -- keeps the per-axis readings fresh.

Poll mode (stream channel)
    One worker thread queries each axis in turn, decodes the reply
    inline and records the rotation count.

Event mode (endpoint channel)
    The worker thread only *sends* queries.  Replies arrive on the
    channel's receive callback, which decodes, routes the reply to its
    axis by port number, records it and returns.  The callback is
    registered for the whole connection, so forward-calibration replies
    are caught even before the session starts.

In both modes the worker then compares each axis' percentage against the
last value it emitted and calls the ``on_update`` sink only for changes.
The sink therefore always runs on the worker thread, never on the
channel's receive context.

Stopping is cooperative: the "continue" flag is checked once per
iteration and an in-flight command is never interrupted.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable

from nxt_throttle.calibration.decoder import (
    DEFAULT_DEAD_ZONE_PERCENT,
    NO_READING,
    axis_percent,
)
from nxt_throttle.calibration.engine import CalibrationEngine, IllegalTransition
from nxt_throttle.hardware.brick_client import BrickClient
from nxt_throttle.hardware.channel import ChannelError
from nxt_throttle.protocol.commands import OP_GET_OUTPUT_STATE, AxisId
from nxt_throttle.protocol.packets import ProtocolError

logger = logging.getLogger(__name__)

UpdateSink = Callable[[AxisId, float], None]


# ---------------------------------------------------------------------------
# Per-axis runtime state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AxisSnapshot:
    """Consistent copy of one axis' runtime state."""

    raw_ticks: int | None
    last_emitted_percent: float | None


class AxisRuntimeState:
    """Latest reading of one axis, guarded by its own lock.

    Writers (worker thread or receive callback) and readers never see a
    half-updated record.  Axes never need to be updated together.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raw_ticks: int | None = None
        self._last_emitted: float | None = None

    def record(self, raw_ticks: int) -> None:
        with self._lock:
            self._raw_ticks = raw_ticks

    def clear(self) -> None:
        with self._lock:
            self._raw_ticks = None
            self._last_emitted = None

    def snapshot(self) -> AxisSnapshot:
        with self._lock:
            return AxisSnapshot(self._raw_ticks, self._last_emitted)

    def mark_emitted(self, percent: float) -> bool:
        """Store *percent* as emitted; ``False`` if it was unchanged."""
        with self._lock:
            if self._last_emitted == percent:
                return False
            self._last_emitted = percent
            return True


# ---------------------------------------------------------------------------
# Session loop
# ---------------------------------------------------------------------------


class SessionMode(Enum):
    """How replies reach the session."""

    POLL = auto()
    EVENT = auto()


class SessionLoop:
    """Reading loop for one connected brick.

    Parameters
    ----------
    client : BrickClient
        Connected client.  Its channel flavour selects the mode.
    engine : CalibrationEngine
        Source of per-axis calibrations; pending forward readings are
        applied through it.
    poll_interval_s : float
        Pause between iterations.
    dead_zone_percent : float
        Throttle dead zone handed to the decoder.
    on_update : callable | None
        Sink called as ``on_update(axis, percent)`` when a percentage
        changes.
    """

    def __init__(
        self,
        client: BrickClient,
        engine: CalibrationEngine,
        *,
        poll_interval_s: float = 0.005,
        dead_zone_percent: float = DEFAULT_DEAD_ZONE_PERCENT,
        on_update: UpdateSink | None = None,
    ) -> None:
        self._client = client
        self._engine = engine
        self.poll_interval_s = poll_interval_s
        self.dead_zone_percent = dead_zone_percent
        self.on_update = on_update

        self.mode = (
            SessionMode.EVENT if client.is_event_driven else SessionMode.POLL
        )
        self._states = {axis: AxisRuntimeState() for axis in engine.axes}
        self._continue = threading.Event()
        self._thread: threading.Thread | None = None

        if self.mode is SessionMode.EVENT:
            client.on_reply(self._on_reply)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread.  No-op when already running."""
        if self.is_running:
            return
        self._continue.set()
        self._thread = threading.Thread(
            target=self._loop, name="brick-session", daemon=True,
        )
        self._thread.start()
        logger.info("Session started (%s mode)", self.mode.name.lower())

    def stop(self, timeout: float = 2.0) -> None:
        """Ask the worker to finish its iteration and wait for it."""
        self._continue.clear()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Session thread still busy after %.1f s", timeout)
            self._thread = None
            logger.info("Session stopped")

    def detach(self) -> None:
        """Stop and unregister the reply callback (connection closing)."""
        self.stop()
        if self.mode is SessionMode.EVENT:
            self._client.on_reply(None)

    # ------------------------------------------------------------------
    # Axis state
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Forget every reading and emitted value."""
        for state in self._states.values():
            state.clear()

    def snapshot(self, axis: AxisId) -> AxisSnapshot:
        return self._states[axis].snapshot()

    def percent(self, axis: AxisId) -> float:
        """Last known percentage of *axis*, or ``NO_READING``."""
        percent = self._current_percent(axis)
        return NO_READING if percent is None else percent

    def _current_percent(self, axis: AxisId) -> float | None:
        raw = self._states[axis].snapshot().raw_ticks
        calibration = self._engine.calibration(axis)
        if raw is None or not calibration.calibrated:
            return None
        return axis_percent(axis, raw, calibration, self.dead_zone_percent)

    def record(self, axis: AxisId, raw_ticks: int) -> None:
        """Store a fresh reading, completing a pending calibration first."""
        if self._engine.is_pending(axis):
            try:
                self._engine.apply_forward_reading(axis, raw_ticks)
            except IllegalTransition:
                # Recalibration restarted between the check and the apply.
                logger.debug("Pending calibration of %s withdrawn", axis.name)
        self._states[axis].record(raw_ticks)

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def run_once(self) -> None:
        """One pass over every axis followed by change emission."""
        for axis in self._states:
            if self.mode is SessionMode.POLL:
                self._poll_axis(axis)
            else:
                self._request_axis(axis)
        self._emit_changes()

    def _loop(self) -> None:
        while self._continue.is_set():
            self.run_once()
            time.sleep(self.poll_interval_s)

    def _poll_axis(self, axis: AxisId) -> None:
        try:
            raw = self._client.query_position(axis)
        except ProtocolError as exc:
            logger.warning("Discarded reply for %s: %s", axis.name, exc)
            return
        except ChannelError as exc:
            logger.warning("Query for %s failed: %s", axis.name, exc)
            return
        self.record(axis, raw)

    def _request_axis(self, axis: AxisId) -> None:
        try:
            self._client.request_position(axis)
        except ChannelError as exc:
            logger.warning("Query for %s failed: %s", axis.name, exc)

    def _emit_changes(self) -> None:
        for axis, state in self._states.items():
            percent = self._current_percent(axis)
            if percent is None or not state.mark_emitted(percent):
                continue
            if self.on_update is None:
                continue
            try:
                self.on_update(axis, percent)
            except Exception as exc:  # noqa: BLE001
                logger.error("Update sink error for %s: %s", axis.name, exc)

    # ------------------------------------------------------------------
    # Receive path (event mode)
    # ------------------------------------------------------------------

    def _on_reply(self, buffer: bytes) -> None:
        codec = self._client.codec
        try:
            packet = codec.parse(buffer)
        except ProtocolError as exc:
            logger.warning("Discarded reply: %s", exc)
            return
        if not packet.is_reply or packet.command != OP_GET_OUTPUT_STATE:
            logger.debug(
                "Ignoring packet type=0x%02X command=0x%02X",
                packet.type, packet.command,
            )
            return
        try:
            reading = codec.decode_motor_reading(packet)
            axis = AxisId.from_port(reading.port)
        except ProtocolError as exc:
            logger.warning("Discarded reply: %s", exc)
            return
        except ValueError:
            logger.debug("Reply for unmapped port %d", packet.payload[0])
            return
        if axis in self._states:
            self.record(axis, reading.rotation_count)
