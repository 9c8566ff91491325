"""Tests for the guided calibration in ``scripts/run_bridge.py``."""

from __future__ import annotations

import pytest

from conftest import FakeBrickStream
from nxt_throttle.calibration.engine import SessionState
from nxt_throttle.configs.loader import ToneConfig
from nxt_throttle.hardware.controller import ThrottleController
from nxt_throttle.scripts.run_bridge import calibrate

TONE_880_150 = bytes([0x06, 0x00, 0x80, 0x03, 0x70, 0x03, 0x96, 0x00])


@pytest.fixture
def no_prompts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("builtins.input", lambda prompt="": "")


class TestCalibrate:
    def test_beeps_after_connecting(self, no_prompts: None) -> None:
        channel = FakeBrickStream({0: 103, 1: 103, 2: 103})
        ctl = ThrottleController(
            lambda: channel, heartbeat_enabled=False, connect_interval_s=0,
        )
        try:
            calibrate(ctl, ToneConfig(frequency_hz=880, duration_ms=150))
            assert ctl.state is SessionState.READY
        finally:
            ctl.disconnect()
        assert channel.written[0] == TONE_880_150

    def test_failed_beep_does_not_stop_calibration(
        self, no_prompts: None,
    ) -> None:
        channel = FakeBrickStream({0: 103, 1: 103, 2: 103})
        ctl = ThrottleController(
            lambda: channel, heartbeat_enabled=False, connect_interval_s=0,
        )
        original_write = channel.write

        def write(data: bytes) -> None:
            if data == TONE_880_150:
                channel.fail_writes = True
                try:
                    original_write(data)
                finally:
                    channel.fail_writes = False
            else:
                original_write(data)

        channel.write = write  # type: ignore[method-assign]
        try:
            calibrate(ctl, ToneConfig(frequency_hz=880, duration_ms=150))
            assert ctl.state is SessionState.READY
        finally:
            ctl.disconnect()
