"""Calibration state machine.

The levers are calibrated in two user-driven steps::

    IDLE --begin_setup--> AWAITING_BACKWARD --backward--> AWAITING_FORWARD
         --forward--> READY --begin_setup--> AWAITING_BACKWARD ...

1. *Backward*: every lever is pulled fully back and the motor rotation
   counters are zeroed on the brick.
2. *Forward*: every lever is pushed fully forward and the rotation count
   is read back.  Its sign gives the motor direction, its magnitude
   (minus a small leeway) the full-travel tick count.

This module holds the states and the per-axis results only.  Sending the
reset / query commands is the controller's job; it calls into the engine
before touching the brick so an out-of-order step fails without side
effects.

All methods are thread-safe: the receive thread may apply a pending
forward reading while the caller's thread reads calibrations.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterable

from nxt_throttle.protocol.commands import AxisId

logger = logging.getLogger(__name__)

DEFAULT_LEEWAY_TICKS = 3


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StateError(Exception):
    """Base exception for calibration sequencing errors."""

    pass


class IllegalTransition(StateError):
    """A calibration step was invoked outside its legal state."""

    pass


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class SessionState(Enum):
    """Calibration progress of the open connection."""

    IDLE = auto()
    AWAITING_BACKWARD = auto()
    AWAITING_FORWARD = auto()
    READY = auto()


@dataclass(frozen=True)
class AxisCalibration:
    """Direction and travel of one lever.

    Parameters
    ----------
    direction : int
        ``+1`` or ``-1``; multiplies raw ticks so forward is positive.
    max_rotation : int
        Ticks corresponding to 100 %.  Always ``>= 1``.
    calibrated : bool
        ``False`` until a forward reading has been applied.
    """

    direction: int = 1
    max_rotation: int = 1
    calibrated: bool = False

    def __post_init__(self) -> None:
        if self.direction not in (1, -1):
            raise ValueError(f"direction must be +1 or -1, got {self.direction}")
        if self.max_rotation < 1:
            raise ValueError(
                f"max_rotation must be >= 1, got {self.max_rotation}"
            )


def infer_calibration(raw_ticks: int, leeway_ticks: int) -> AxisCalibration:
    """Derive a calibration from the forward-extreme reading.

    Formula::

        direction    = -1 if raw < 0 else +1
        max_rotation = max(1, |raw| - leeway)
    """
    direction = -1 if raw_ticks < 0 else 1
    max_rotation = max(1, abs(raw_ticks) - leeway_ticks)
    return AxisCalibration(
        direction=direction, max_rotation=max_rotation, calibrated=True,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CalibrationEngine:
    """Session state machine plus one :class:`AxisCalibration` per axis.

    Parameters
    ----------
    leeway_ticks : int
        Ticks subtracted from the forward extreme so a lever that stops
        slightly short of its limit still reads 100 %.
    axes : iterable of AxisId
        Axes under calibration (all three by default).
    """

    def __init__(
        self,
        leeway_ticks: int = DEFAULT_LEEWAY_TICKS,
        axes: Iterable[AxisId] = tuple(AxisId),
    ) -> None:
        if leeway_ticks < 0:
            raise ValueError(f"leeway_ticks must be >= 0, got {leeway_ticks}")
        self.leeway_ticks = leeway_ticks
        self.axes: tuple[AxisId, ...] = tuple(axes)

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._calibrations = {axis: AxisCalibration() for axis in self.axes}
        self._pending_forward: set[AxisId] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    def calibration(self, axis: AxisId) -> AxisCalibration:
        """Current calibration of *axis* (an immutable snapshot)."""
        return self._calibrations[axis]

    def is_calibrated(self, axis: AxisId) -> bool:
        return self._calibrations[axis].calibrated

    def is_pending(self, axis: AxisId) -> bool:
        """``True`` while *axis* waits for its first forward reading."""
        return axis in self._pending_forward

    def require(self, expected: SessionState, step: str) -> None:
        """Raise :class:`IllegalTransition` unless in *expected* state."""
        if self._state is not expected:
            raise IllegalTransition(
                f"{step}() is only legal in {expected.name}, "
                f"current state is {self._state.name}"
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def begin_setup(self) -> None:
        """Forget every calibration and wait for the backward step.

        Legal from any state; calling it mid-calibration restarts the
        sequence.
        """
        with self._lock:
            previous = self._state
            self._calibrations = {axis: AxisCalibration() for axis in self.axes}
            self._pending_forward.clear()
            self._state = SessionState.AWAITING_BACKWARD
        logger.info(
            "Calibration started (%s -> AWAITING_BACKWARD)", previous.name,
        )

    def complete_backward(self) -> None:
        """Record that all rotation counters were zeroed."""
        with self._lock:
            self.require(SessionState.AWAITING_BACKWARD, "calibrate_backward")
            self._state = SessionState.AWAITING_FORWARD
        logger.info("Backward calibration done -> AWAITING_FORWARD")

    def apply_forward_reading(
        self, axis: AxisId, raw_ticks: int,
    ) -> AxisCalibration:
        """Infer *axis*'s calibration from its forward-extreme reading.

        Legal while awaiting the forward step, or in ``READY`` for axes
        still pending their first reading.

        Raises
        ------
        IllegalTransition
            If neither condition holds.
        """
        with self._lock:
            if not (
                self._state is SessionState.AWAITING_FORWARD
                or axis in self._pending_forward
            ):
                raise IllegalTransition(
                    f"No forward reading expected for {axis.name} "
                    f"in state {self._state.name}"
                )
            calib = infer_calibration(raw_ticks, self.leeway_ticks)
            self._calibrations[axis] = calib
            self._pending_forward.discard(axis)

        logger.info(
            "%s calibrated: raw=%d direction=%+d max_rotation=%d",
            axis.name, raw_ticks, calib.direction, calib.max_rotation,
        )
        return calib

    def complete_forward(self, pending: Iterable[AxisId] = ()) -> None:
        """Enter ``READY``.

        Parameters
        ----------
        pending : iterable of AxisId
            Axes whose forward reading has not arrived yet; the first
            reading received for each is used to calibrate it.
        """
        with self._lock:
            self.require(SessionState.AWAITING_FORWARD, "calibrate_forward")
            self._pending_forward = {
                axis for axis in pending
                if not self._calibrations[axis].calibrated
            }
            self._state = SessionState.READY
            waiting = sorted(self._pending_forward, key=lambda a: a.value)
        if waiting:
            logger.info(
                "Forward calibration pending for %s -> READY",
                ", ".join(a.name for a in waiting),
            )
        else:
            logger.info("Forward calibration done -> READY")

    def reset(self) -> None:
        """Return to ``IDLE`` with no calibration (connection closed)."""
        with self._lock:
            self._calibrations = {axis: AxisCalibration() for axis in self.axes}
            self._pending_forward.clear()
            self._state = SessionState.IDLE
