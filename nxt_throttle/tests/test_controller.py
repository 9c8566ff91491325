"""End-to-end tests for the throttle controller against fake bricks."""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Callable, Dict, Iterator, List, Tuple

import pytest

from conftest import FakeBrickEndpoint, FakeBrickStream
from nxt_throttle.calibration.decoder import NO_READING
from nxt_throttle.calibration.engine import IllegalTransition, SessionState
from nxt_throttle.configs.loader import load_config
from nxt_throttle.hardware.brick_client import BrickConnectionError
from nxt_throttle.hardware.channel import ReaderThreadChannel
from nxt_throttle.hardware.controller import ThrottleController
from nxt_throttle.hardware.session import SessionMode
from nxt_throttle.protocol.commands import AxisId
from nxt_throttle.protocol.packets import ENDPOINT_ROTATION_OFFSET, PacketCodec

KEEP_ALIVE = bytes([0x02, 0x00, 0x80, 0x0D])


class StreamFactory:
    """Channel factory that remembers every channel it built."""

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.positions: Dict[int, int] = {0: 0, 1: 0, 2: 0}
        self.built: List[FakeBrickStream] = []

    def __call__(self) -> FakeBrickStream:
        channel = FakeBrickStream(self.positions, **self.kwargs)
        # Share one position table across reconnects.
        channel.positions = self.positions
        self.built.append(channel)
        return channel

    @property
    def channel(self) -> FakeBrickStream:
        return self.built[-1]


def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def factory() -> StreamFactory:
    return StreamFactory()


@pytest.fixture
def controller(factory: StreamFactory) -> Iterator[ThrottleController]:
    ctl = ThrottleController(
        factory,
        leeway_ticks=2,
        poll_interval_s=0.001,
        heartbeat_enabled=False,
        connect_interval_s=0,
    )
    yield ctl
    ctl.disconnect()


def _calibrate(ctl: ThrottleController, factory: StreamFactory,
               forward: Tuple[int, int, int] = (-350, 350, 350)) -> None:
    ctl.begin_setup()
    ctl.calibrate_backward()
    factory.positions.update(dict(enumerate(forward)))
    ctl.calibrate_forward()


# ---------------------------------------------------------------------------
# Calibration flow
# ---------------------------------------------------------------------------


class TestCalibrationFlow:
    def test_full_flow(
        self, controller: ThrottleController, factory: StreamFactory,
    ) -> None:
        assert controller.state is SessionState.IDLE
        controller.begin_setup()
        assert controller.is_connected
        assert controller.state is SessionState.AWAITING_BACKWARD

        controller.calibrate_backward()
        resets = [f for f in factory.channel.written if f[3] == 0x0A]
        assert [f[4] for f in resets] == [0, 1, 2]
        assert controller.state is SessionState.AWAITING_FORWARD

        factory.positions.update({0: -350, 1: 350, 2: 350})
        controller.calibrate_forward()
        assert controller.state is SessionState.READY
        calib = controller.engine.calibration(AxisId.THROTTLE)
        assert (calib.direction, calib.max_rotation) == (-1, 348)
        assert controller.get_axis_percent(AxisId.THROTTLE) == 100.0

        controller.start_session()
        assert controller.mode is SessionMode.POLL
        factory.positions[0] = -174
        assert _wait_for(
            lambda: controller.get_axis_percent(AxisId.THROTTLE) == 50.0
        )
        controller.stop_session()
        assert not controller.session_running

        controller.disconnect()
        assert controller.state is SessionState.IDLE
        assert controller.get_axis_percent(AxisId.THROTTLE) == NO_READING

    def test_updates_reach_sink(self, factory: StreamFactory) -> None:
        updates: List[Tuple[AxisId, float]] = []
        with ThrottleController(
            factory, poll_interval_s=0.001, heartbeat_enabled=False,
            connect_interval_s=0,
            on_update=lambda axis, pct: updates.append((axis, pct)),
        ) as ctl:
            _calibrate(ctl, factory, (103, 103, 103))
            ctl.start_session()
            factory.positions[2] = 50
            assert _wait_for(lambda: (AxisId.YAW, 50.0) in updates)

    def test_out_of_order_steps(
        self, controller: ThrottleController, factory: StreamFactory,
    ) -> None:
        with pytest.raises(IllegalTransition):
            controller.calibrate_backward()
        with pytest.raises(IllegalTransition):
            controller.calibrate_forward()
        assert factory.built == []

        controller.begin_setup()
        with pytest.raises(IllegalTransition):
            controller.calibrate_forward()
        assert factory.channel.written == []
        assert controller.state is SessionState.AWAITING_BACKWARD

    def test_recalibration_reconnects(
        self, controller: ThrottleController, factory: StreamFactory,
    ) -> None:
        _calibrate(controller, factory)
        controller.begin_setup()
        assert len(factory.built) == 2
        assert not factory.built[0].is_open
        assert controller.state is SessionState.AWAITING_BACKWARD
        assert not any(
            controller.engine.is_calibrated(axis) for axis in AxisId
        )
        assert controller.get_axis_percent(AxisId.THROTTLE) == NO_READING

    def test_failed_forward_query_left_pending(
        self, controller: ThrottleController, factory: StreamFactory,
    ) -> None:
        controller.begin_setup()
        controller.calibrate_backward()
        factory.positions.update({0: 200, 1: 200})
        del factory.positions[2]
        controller.calibrate_forward()

        assert controller.state is SessionState.READY
        assert controller.engine.is_pending(AxisId.YAW)
        assert controller.get_axis_percent(AxisId.YAW) == NO_READING

        factory.positions[2] = 90
        controller.start_session()
        assert _wait_for(lambda: controller.engine.is_calibrated(AxisId.YAW))
        assert controller.engine.calibration(AxisId.YAW).max_rotation == 88

    def test_connect_failure(self) -> None:
        factory = StreamFactory(fail_opens=-1)
        ctl = ThrottleController(factory, connect_interval_s=0)
        with pytest.raises(BrickConnectionError):
            ctl.begin_setup()
        assert factory.channel.open_attempts == 5
        assert ctl.state is SessionState.IDLE
        assert not ctl.is_connected


# ---------------------------------------------------------------------------
# Session control
# ---------------------------------------------------------------------------


class TestSessionControl:
    def test_start_requires_connection(
        self, controller: ThrottleController,
    ) -> None:
        with pytest.raises(IllegalTransition):
            controller.start_session()

    def test_heartbeat_follows_session(self, factory: StreamFactory) -> None:
        ctl = ThrottleController(
            factory, poll_interval_s=0.001, heartbeat_interval_s=0.01,
            connect_interval_s=0,
        )
        try:
            _calibrate(ctl, factory)
            ctl.start_session()
            assert _wait_for(
                lambda: factory.channel.written.count(KEEP_ALIVE) >= 2
            )
            ctl.stop_session()
            sent = factory.channel.written.count(KEEP_ALIVE)
            time.sleep(0.05)
            assert factory.channel.written.count(KEEP_ALIVE) == sent
        finally:
            ctl.disconnect()

    def test_beep(
        self, controller: ThrottleController, factory: StreamFactory,
    ) -> None:
        with pytest.raises(IllegalTransition):
            controller.beep(880, 150)
        controller.connect()
        controller.beep(440, 100)
        assert factory.channel.written[-1][2:4] == bytes([0x80, 0x03])

    def test_connect_is_idempotent(
        self, controller: ThrottleController, factory: StreamFactory,
    ) -> None:
        controller.connect()
        controller.connect()
        assert len(factory.built) == 1


# ---------------------------------------------------------------------------
# Event mode
# ---------------------------------------------------------------------------


class TestEventMode:
    def test_forward_calibration_via_callbacks(self) -> None:
        positions = {0: 53, 1: -53, 2: 203}
        ctl = ThrottleController(
            lambda: FakeBrickEndpoint(positions),
            codec=PacketCodec(ENDPOINT_ROTATION_OFFSET),
            heartbeat_enabled=False,
        )
        try:
            ctl.begin_setup()
            ctl.calibrate_backward()
            ctl.calibrate_forward()
            assert ctl.mode is SessionMode.EVENT
            assert ctl.state is SessionState.READY
            assert all(ctl.engine.is_calibrated(axis) for axis in AxisId)
            assert ctl.engine.calibration(AxisId.PITCH).direction == -1
            assert ctl.engine.calibration(AxisId.YAW).max_rotation == 200
        finally:
            ctl.disconnect()


# ---------------------------------------------------------------------------
# Config wiring
# ---------------------------------------------------------------------------


class TestFromConfig:
    def test_values_from_config(self, factory: StreamFactory) -> None:
        ctl = ThrottleController.from_config(
            load_config(), channel_factory=factory,
        )
        assert ctl.poll_interval_s == pytest.approx(0.005)
        assert ctl.heartbeat_interval_s == 60.0
        assert ctl.engine.leeway_ticks == 3
        ctl.connect()
        assert ctl.client.codec.rotation_offset == 23
        ctl.disconnect()

    def test_event_mode_rejects_bare_offset(self) -> None:
        config = load_config()
        config = replace(
            config,
            protocol=replace(
                config.protocol, rotation_offset=ENDPOINT_ROTATION_OFFSET,
            ),
        )
        with pytest.raises(ValueError, match="rotation_offset"):
            ThrottleController.from_config(config, event_mode=True)


# ---------------------------------------------------------------------------
# Reader-thread transport
# ---------------------------------------------------------------------------


class TestReaderThreadTransport:
    def test_bare_offset_fails_at_connect(self) -> None:
        ctl = ThrottleController(
            lambda: ReaderThreadChannel(
                FakeBrickStream({0: 203, 1: 203, 2: 203})
            ),
            codec=PacketCodec(ENDPOINT_ROTATION_OFFSET),
            heartbeat_enabled=False,
        )
        with pytest.raises(ValueError):
            ctl.begin_setup()
        assert ctl.state is SessionState.IDLE
        assert not ctl.is_connected

    def test_prefixed_offset_calibrates_from_events(self) -> None:
        ctl = ThrottleController(
            lambda: ReaderThreadChannel(
                FakeBrickStream({0: 203, 1: 203, 2: 203})
            ),
            heartbeat_enabled=False,
            connect_interval_s=0,
        )
        try:
            ctl.begin_setup()
            ctl.calibrate_backward()
            ctl.calibrate_forward()
            assert ctl.mode is SessionMode.EVENT
            assert _wait_for(
                lambda: all(ctl.engine.is_calibrated(a) for a in AxisId)
            )
            assert ctl.engine.calibration(AxisId.YAW).max_rotation == 200
        finally:
            ctl.disconnect()
