"""Configuration loader for the throttle bridge.

Loads and validates ``bridge.yaml`` into typed, frozen dataclasses.
Serial settings, retry budgets, the reply layout offset, calibration
leeway and timing all come from the config -- nothing is hardcoded in
the hardware layer.

Usage::

    from nxt_throttle.configs.loader import load_config
    cfg = load_config()                     # default path
    cfg = load_config("/custom/bridge.yaml") # explicit path
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from nxt_throttle.protocol.packets import VALID_ROTATION_OFFSETS
from nxt_throttle.utils.fs import load_yaml

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionConfig:
    """Serial connection settings."""

    port: str
    baudrate: int
    timeout_s: float
    write_timeout_s: float
    connect_attempts: int
    connect_interval_s: float


@dataclass(frozen=True)
class ProtocolConfig:
    """Reply layout of the transport in use.

    ``rotation_offset`` is 23 for length-prefixed stream replies and 21
    for unprefixed endpoint replies.
    """

    rotation_offset: int


@dataclass(frozen=True)
class CalibrationConfig:
    """Calibration tolerances."""

    leeway_ticks: int
    throttle_dead_zone_percent: float


@dataclass(frozen=True)
class SessionConfig:
    """Session loop pacing."""

    poll_interval_ms: int

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0


@dataclass(frozen=True)
class HeartbeatConfig:
    """Keep-alive timing.

    ``interval_s`` must stay strictly below ``device_sleep_timeout_s`` so
    the brick's idle timer is always reset before it expires.
    """

    enabled: bool
    interval_s: float
    device_sleep_timeout_s: float


@dataclass(frozen=True)
class ToneConfig:
    """Confirmation beep."""

    frequency_hz: int
    duration_ms: int


@dataclass(frozen=True)
class LoggingConfig:
    """Log sink settings used by the entry-point scripts."""

    level: str
    file: str | None
    json: bool


@dataclass(frozen=True)
class BridgeConfig:
    """Complete bridge configuration loaded from ``bridge.yaml``."""

    connection: ConnectionConfig
    protocol: ProtocolConfig
    calibration: CalibrationConfig
    session: SessionConfig
    heartbeat: HeartbeatConfig
    tone: ToneConfig
    logging: LoggingConfig


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_config(cfg: BridgeConfig) -> None:
    """Validate value ranges and cross-field consistency.

    Raises
    ------
    ConfigError
        On any invalid combination.
    """
    c = cfg.connection
    if not c.port:
        raise ConfigError("connection.port must not be empty")
    if c.baudrate <= 0:
        raise ConfigError(f"baudrate must be > 0, got {c.baudrate}")
    if c.timeout_s <= 0:
        raise ConfigError(f"timeout_s must be > 0, got {c.timeout_s}")
    if c.write_timeout_s <= 0:
        raise ConfigError(
            f"write_timeout_s must be > 0, got {c.write_timeout_s}"
        )
    if c.connect_attempts < 1:
        raise ConfigError(
            f"connect_attempts must be >= 1, got {c.connect_attempts}"
        )
    if c.connect_interval_s < 0:
        raise ConfigError(
            f"connect_interval_s must be >= 0, got {c.connect_interval_s}"
        )

    # -- Reply layout is a property of the transport, never guessed -------
    if cfg.protocol.rotation_offset not in VALID_ROTATION_OFFSETS:
        raise ConfigError(
            f"protocol.rotation_offset must be one of "
            f"{sorted(VALID_ROTATION_OFFSETS)}, "
            f"got {cfg.protocol.rotation_offset}"
        )

    cal = cfg.calibration
    if cal.leeway_ticks < 0:
        raise ConfigError(
            f"leeway_ticks must be >= 0, got {cal.leeway_ticks}"
        )
    if not 0.0 <= cal.throttle_dead_zone_percent < 100.0:
        raise ConfigError(
            f"throttle_dead_zone_percent must be in [0, 100), "
            f"got {cal.throttle_dead_zone_percent}"
        )
    if cal.leeway_ticks > 3:
        logger.warning(
            "leeway_ticks=%d is larger than usual (2-3); the lever will "
            "read 100%% well before its travel limit",
            cal.leeway_ticks,
        )

    if cfg.session.poll_interval_ms < 0:
        raise ConfigError(
            f"poll_interval_ms must be >= 0, "
            f"got {cfg.session.poll_interval_ms}"
        )

    hb = cfg.heartbeat
    if hb.interval_s <= 0:
        raise ConfigError(
            f"heartbeat.interval_s must be > 0, got {hb.interval_s}"
        )
    if hb.interval_s >= hb.device_sleep_timeout_s:
        raise ConfigError(
            f"heartbeat.interval_s ({hb.interval_s}) must be shorter than "
            f"device_sleep_timeout_s ({hb.device_sleep_timeout_s})"
        )

    t = cfg.tone
    if not 0 < t.frequency_hz <= 0xFFFF:
        raise ConfigError(
            f"tone.frequency_hz must be in 1..65535, got {t.frequency_hz}"
        )
    if not 0 < t.duration_ms <= 0xFFFF:
        raise ConfigError(
            f"tone.duration_ms must be in 1..65535, got {t.duration_ms}"
        )

    if cfg.logging.level.upper() not in (
        "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL",
    ):
        raise ConfigError(f"Unknown logging.level '{cfg.logging.level}'")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> BridgeConfig:
    """Load and validate bridge configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``bridge.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    BridgeConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    if path is None:
        path = Path(__file__).parent / "bridge.yaml"
    else:
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    data: dict[str, Any] = load_yaml(path)
    if not data:
        raise ConfigError(f"Empty configuration file: {path}")

    try:
        cd = data["connection"]
        connection = ConnectionConfig(
            port=str(cd["port"]),
            baudrate=int(cd.get("baudrate", 115200)),
            timeout_s=float(cd["timeout_s"]),
            write_timeout_s=float(
                cd.get("write_timeout_s", cd["timeout_s"])
            ),
            connect_attempts=int(cd.get("connect_attempts", 5)),
            connect_interval_s=float(cd.get("connect_interval_s", 0.5)),
        )

        protocol = ProtocolConfig(
            rotation_offset=int(data["protocol"]["rotation_offset"]),
        )

        cal = data.get("calibration", {}) or {}
        calibration = CalibrationConfig(
            leeway_ticks=int(cal.get("leeway_ticks", 3)),
            throttle_dead_zone_percent=float(
                cal.get("throttle_dead_zone_percent", 7.0)
            ),
        )

        sd = data.get("session", {}) or {}
        session = SessionConfig(
            poll_interval_ms=int(sd.get("poll_interval_ms", 5)),
        )

        hd = data.get("heartbeat", {}) or {}
        heartbeat = HeartbeatConfig(
            enabled=bool(hd.get("enabled", True)),
            interval_s=float(hd.get("interval_s", 60.0)),
            device_sleep_timeout_s=float(
                hd.get("device_sleep_timeout_s", 120.0)
            ),
        )

        td = data.get("tone", {}) or {}
        tone = ToneConfig(
            frequency_hz=int(td.get("frequency_hz", 880)),
            duration_ms=int(td.get("duration_ms", 150)),
        )

        ld = data.get("logging", {}) or {}
        log_file = ld.get("file")
        logging_cfg = LoggingConfig(
            level=str(ld.get("level", "INFO")),
            file=str(log_file) if log_file else None,
            json=bool(ld.get("json", False)),
        )

        config = BridgeConfig(
            connection=connection,
            protocol=protocol,
            calibration=calibration,
            session=session,
            heartbeat=heartbeat,
            tone=tone,
            logging=logging_cfg,
        )

        _validate_config(config)
        logger.info("Configuration loaded successfully")
        return config

    except KeyError as exc:
        raise ConfigError(
            f"Missing required configuration key: {exc}"
        ) from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid configuration value: {exc}"
        ) from exc
