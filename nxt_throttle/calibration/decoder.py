"""Raw encoder ticks to lever percentages.

Formula::

    signed  = raw * direction          (negated again for PITCH)
    percent = signed / max_rotation * 100

Per-axis rules:

    THROTTLE  |percent| clamped to 100; below the dead zone reports 0
    YAW       |percent| clamped to 100
    PITCH     signed percent clamped to 100 at the top only -- the
              consumer uses the negative half-range
"""

from __future__ import annotations

from nxt_throttle.calibration.engine import AxisCalibration
from nxt_throttle.protocol.commands import AxisId

NO_READING = -1.0
"""Reported for an axis that is uncalibrated or has no reading yet."""

DEFAULT_DEAD_ZONE_PERCENT = 7.0
MAX_PERCENT = 100.0


def axis_percent(
    axis: AxisId,
    raw_ticks: int,
    calibration: AxisCalibration,
    dead_zone_percent: float = DEFAULT_DEAD_ZONE_PERCENT,
) -> float:
    """Map *raw_ticks* to a lever percentage.

    Parameters
    ----------
    axis : AxisId
        Selects the polarity and dead-zone rules.
    raw_ticks : int
        Rotation count as reported by the brick.
    calibration : AxisCalibration
        Must be calibrated.
    dead_zone_percent : float
        Throttle readings below this report exactly ``0.0``.

    Raises
    ------
    ValueError
        If *calibration* is not calibrated; callers report
        :data:`NO_READING` instead.
    """
    if not calibration.calibrated:
        raise ValueError(f"{axis.name} is not calibrated")

    signed = raw_ticks * calibration.direction
    if axis is AxisId.PITCH:
        # Forward pitch turns the motor the other way round.
        return min(MAX_PERCENT, -signed / calibration.max_rotation * 100.0)

    percent = min(MAX_PERCENT, abs(signed) / calibration.max_rotation * 100.0)
    if axis is AxisId.THROTTLE and percent < dead_zone_percent:
        return 0.0
    return percent
