"""NXT throttle quadrant bridge.

Reads three motor-encoder levers (throttle, pitch, yaw) from a LEGO NXT
brick over its direct-command protocol and exposes them as calibrated
percentages.

Subpackages:
    protocol: Command vocabulary and packet codec
    calibration: Setup state machine and tick-to-percent decoder
    hardware: Channels, brick client, session loop, heartbeat, controller
    configs: Bridge configuration loading and validation
    utils: YAML and logging helpers
"""

__version__ = "0.3.0"

__all__ = ["protocol", "calibration", "hardware", "configs", "utils"]
