#!/usr/bin/env python3
"""Guided lever calibration followed by a live readout.

Walks through the three setup steps with terminal prompts, then runs the
session and prints every percentage change until interrupted.

Usage::

    python -m nxt_throttle.scripts.run_bridge
    python -m nxt_throttle.scripts.run_bridge --port /dev/rfcomm0
    python -m nxt_throttle.scripts.run_bridge --event-mode --duration 60
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

# Allow direct execution from the repo root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from nxt_throttle.calibration.engine import StateError
from nxt_throttle.configs.loader import (
    BridgeConfig,
    ConfigError,
    ToneConfig,
    load_config,
)
from nxt_throttle.hardware.brick_client import BrickConnectionError
from nxt_throttle.hardware.channel import ChannelError
from nxt_throttle.hardware.controller import ThrottleController
from nxt_throttle.protocol.commands import AxisId
from nxt_throttle.utils.logging_config import install_excepthook, setup_logging

logger = logging.getLogger(__name__)


def print_update(axis: AxisId, percent: float) -> None:
    """Default sink: one line per change."""
    print(f"  {axis.name:<9s} {percent:7.2f} %")


def _prompt(message: str) -> None:
    input(f"\n>>> {message} -- press Enter ")


def _print_calibration(controller: ThrottleController) -> None:
    print(f"\n{'='*50}")
    print("  CALIBRATION")
    print(f"{'='*50}")
    for axis in controller.engine.axes:
        cal = controller.engine.calibration(axis)
        if cal.calibrated:
            print(f"  {axis.name:<9s} direction={cal.direction:+d} "
                  f"max_rotation={cal.max_rotation}")
        else:
            print(f"  {axis.name:<9s} pending (first reading calibrates)")
    print(f"{'='*50}\n")


def calibrate(controller: ThrottleController, tone: ToneConfig) -> None:
    """Run the three setup steps interactively.

    The brick beeps once the connection is up.
    """
    _prompt("Connecting. Pull every lever fully BACK")
    controller.begin_setup()
    try:
        controller.beep(tone.frequency_hz, tone.duration_ms)
    except ChannelError as exc:
        logger.warning("Confirmation beep failed: %s", exc)
    controller.calibrate_backward()
    _prompt("Push every lever fully FORWARD")
    controller.calibrate_forward()
    _print_calibration(controller)


def run(config: BridgeConfig, event_mode: bool, duration: float | None) -> int:
    """Calibrate, then stream readings.  Returns the exit code."""
    try:
        controller = ThrottleController.from_config(
            config, event_mode=event_mode, on_update=print_update,
        )
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    try:
        calibrate(controller, config.tone)
        controller.start_session()
        print("Streaming lever positions (Ctrl+C to stop)...")
        deadline = time.monotonic() + duration if duration else None
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        print("\nStopped by user.")
    except BrickConnectionError as exc:
        logger.error("Could not connect: %s", exc)
        return 1
    except (ChannelError, StateError) as exc:
        logger.error("Calibration failed: %s", exc)
        return 1
    finally:
        controller.disconnect()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Calibrate the levers and stream their positions",
    )
    parser.add_argument("--port", "-p", type=str, help="Serial port override")
    parser.add_argument("--config", "-c", type=str, help="Config file path")
    parser.add_argument("--event-mode", action="store_true",
                        help="Receive replies on a reader thread instead "
                        "of polling")
    parser.add_argument("--duration", type=float, default=None,
                        help="Stop after this many seconds")
    parser.add_argument("--log-level", type=str, default=None,
                        help="Override logging.level from the config")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.port:
        config = replace(
            config, connection=replace(config.connection, port=args.port),
        )

    setup_logging(
        args.log_level or config.logging.level,
        config.logging.file,
        json=config.logging.json,
        quiet_libs=["serial"],
        context={"app": "bridge", "port": config.connection.port},
    )
    install_excepthook()

    sys.exit(run(config, args.event_mode, args.duration))


if __name__ == "__main__":
    main()
