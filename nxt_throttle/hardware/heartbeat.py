"""Periodic keep-alive sender.

The brick powers down after its sleep timer expires; any received
command resets that timer, including ones that request no reply.  The
heartbeat sends :class:`~nxt_throttle.protocol.commands.KeepAlive` on a
fixed interval while a session is active.

Disarming is cooperative: a send already in progress completes, and no
new send starts once :meth:`Heartbeat.disarm` has returned.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from nxt_throttle.hardware.brick_client import BrickError
from nxt_throttle.hardware.channel import ChannelError

logger = logging.getLogger(__name__)


class Heartbeat:
    """Background keep-alive task.

    Parameters
    ----------
    send : callable
        Sends one keep-alive (normally ``BrickClient.keep_alive``).
    interval_s : float
        Seconds between sends; must be shorter than the brick's
        shortest sleep timeout.
    """

    def __init__(self, send: Callable[[], None], interval_s: float) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        self._send = send
        self.interval_s = interval_s

        self._stop = threading.Event()
        self._send_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.sent = 0
        self.failed = 0

    @property
    def is_armed(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def arm(self) -> None:
        """Start sending.  No-op when already armed."""
        if self.is_armed:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="brick-heartbeat", daemon=True,
        )
        self._thread.start()
        logger.info("Heartbeat armed (every %.1f s)", self.interval_s)

    def disarm(self) -> None:
        """Stop sending; waits for an in-flight send to finish."""
        if self._thread is None:
            return
        with self._send_lock:
            self._stop.set()
        self._thread.join(timeout=2.0)
        self._thread = None
        logger.info("Heartbeat disarmed")

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            with self._send_lock:
                if self._stop.is_set():
                    break
                try:
                    self._send()
                    self.sent += 1
                    logger.debug("Keep-alive sent")
                except (ChannelError, BrickError) as exc:
                    self.failed += 1
                    logger.warning("Keep-alive skipped: %s", exc)
