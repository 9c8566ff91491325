"""Hardware communication module.

Provides the byte channels, the direct-command brick client, the session
loop, the keep-alive heartbeat and the controller facade that ties them
to the calibration engine.
"""

from nxt_throttle.hardware.brick_client import (
    BrickClient,
    BrickConnectionError,
    BrickError,
    BrickNotConnected,
)
from nxt_throttle.hardware.channel import (
    Channel,
    ChannelAlreadyOpen,
    ChannelError,
    ChannelIOError,
    EndpointChannel,
    ReaderThreadChannel,
    SerialChannel,
    StreamChannel,
)
from nxt_throttle.hardware.controller import ThrottleController
from nxt_throttle.hardware.heartbeat import Heartbeat
from nxt_throttle.hardware.session import SessionLoop, SessionMode

__all__ = [
    "BrickClient",
    "BrickConnectionError",
    "BrickError",
    "BrickNotConnected",
    "Channel",
    "ChannelAlreadyOpen",
    "ChannelError",
    "ChannelIOError",
    "EndpointChannel",
    "Heartbeat",
    "ReaderThreadChannel",
    "SerialChannel",
    "SessionLoop",
    "SessionMode",
    "StreamChannel",
    "ThrottleController",
]
