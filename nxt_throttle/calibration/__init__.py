"""Lever calibration: the setup state machine and the tick decoder."""

from nxt_throttle.calibration.decoder import (
    DEFAULT_DEAD_ZONE_PERCENT,
    NO_READING,
    axis_percent,
)
from nxt_throttle.calibration.engine import (
    AxisCalibration,
    CalibrationEngine,
    IllegalTransition,
    SessionState,
    StateError,
    infer_calibration,
)

__all__ = [
    "DEFAULT_DEAD_ZONE_PERCENT",
    "NO_READING",
    "AxisCalibration",
    "CalibrationEngine",
    "IllegalTransition",
    "SessionState",
    "StateError",
    "axis_percent",
    "infer_calibration",
]
