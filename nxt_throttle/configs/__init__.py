"""Bridge configuration loading and validation."""

from nxt_throttle.configs.loader import (
    BridgeConfig,
    CalibrationConfig,
    ConfigError,
    ConnectionConfig,
    HeartbeatConfig,
    LoggingConfig,
    ProtocolConfig,
    SessionConfig,
    ToneConfig,
    load_config,
)

__all__ = [
    "BridgeConfig",
    "CalibrationConfig",
    "ConfigError",
    "ConnectionConfig",
    "HeartbeatConfig",
    "LoggingConfig",
    "ProtocolConfig",
    "SessionConfig",
    "ToneConfig",
    "load_config",
]
