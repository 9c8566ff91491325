"""Byte channels between the host and the brick.

Two flavours are consumed by the rest of the package:

Stream (:class:`StreamChannel`)
    ``write(bytes)`` plus a blocking ``read(n)`` that honours the
    channel's own timeout and returns ``b""`` when nothing arrived.
    Drives the session in poll mode.

Endpoint (:class:`EndpointChannel`)
    ``write(bytes)`` plus ``on_receive(callback)``; the callback gets one
    complete reply buffer at a time from the channel's receive context.
    Drives the session in event mode.

Concrete channels shipped here:

- :class:`SerialChannel` -- pyserial port (USB-serial or Bluetooth SPP).
- :class:`ReaderThreadChannel` -- wraps any stream channel in a
  background reader that frames length-prefixed replies and delivers
  them as endpoint callbacks.
"""

from __future__ import annotations

import logging
import struct
import threading
from abc import ABC, abstractmethod
from typing import Callable

import serial

from nxt_throttle.protocol.packets import LENGTH_PREFIX_SIZE, MAX_BODY_LENGTH

logger = logging.getLogger(__name__)

ReceiveCallback = Callable[[bytes], None]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ChannelError(Exception):
    """Base exception for transport failures."""

    pass


class ChannelIOError(ChannelError):
    """Open, write or read failed.  Usually transient."""

    pass


class ChannelAlreadyOpen(ChannelError):
    """The channel is already open, i.e. a live connection exists."""

    pass


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class Channel(ABC):
    """Duplex byte channel owned by a single :class:`BrickClient`."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """``True`` while the channel can carry traffic."""

    @abstractmethod
    def open(self) -> None:
        """Open the channel.

        Raises
        ------
        ChannelAlreadyOpen
            If the channel is already open.
        ChannelIOError
            If the underlying transport cannot be opened.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the channel.  Safe to call when already closed."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write all of *data*.

        Raises
        ------
        ChannelIOError
            On any transport failure.
        """


class StreamChannel(Channel):
    """Channel with blocking, timeout-bounded reads."""

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Read up to *size* bytes; ``b""`` when the timeout expires."""

    def discard_input(self) -> None:
        """Drop any unread input (used to resynchronise framing)."""


class EndpointChannel(Channel):
    """Channel that pushes complete reply buffers to a callback."""

    #: Whether delivered buffers keep the two-byte length prefix.
    delivers_prefixed = False

    @abstractmethod
    def on_receive(self, callback: ReceiveCallback | None) -> None:
        """Register (or clear, with ``None``) the receive callback."""


# ---------------------------------------------------------------------------
# Serial port
# ---------------------------------------------------------------------------


def _port_in_use(exc: serial.SerialException) -> bool:
    """``True`` when *exc* means another handle already holds the port.

    pyserial says "already open" for its own handle.  On Windows a COM
    port held by another handle is refused with
    ``PermissionError(13, 'Access is denied.', ...)`` in the message.
    A POSIX "Permission denied" is a real failure and is not matched.
    """
    message = str(exc).lower()
    return (
        "already open" in message
        or "access is denied" in message
        or "permissionerror(13" in message
    )


class SerialChannel(StreamChannel):
    """Stream channel over a pyserial port.

    Parameters
    ----------
    port : str
        Device name, e.g. ``"COM3"`` or ``"/dev/rfcomm0"``.
    baudrate : int
        Line speed.  Ignored by Bluetooth SPP ports.
    timeout : float
        Read timeout in seconds.
    write_timeout : float
        Write timeout in seconds.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        timeout: float = 0.5,
        write_timeout: float = 0.5,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = write_timeout
        self._serial: serial.Serial | None = None

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self) -> None:
        if self.is_open:
            raise ChannelAlreadyOpen(f"{self.port} is already open")
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                timeout=self.timeout,
                write_timeout=self.write_timeout,
            )
        except serial.SerialException as exc:
            self._serial = None
            if _port_in_use(exc):
                raise ChannelAlreadyOpen(str(exc)) from exc
            raise ChannelIOError(f"Cannot open {self.port}: {exc}") from exc
        except OSError as exc:
            self._serial = None
            raise ChannelIOError(f"Cannot open {self.port}: {exc}") from exc
        logger.info("Serial port %s opened @ %d", self.port, self.baudrate)

    def close(self) -> None:
        if self._serial is not None:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as exc:
                logger.warning("Error closing %s: %s", self.port, exc)
            self._serial = None

    def write(self, data: bytes) -> None:
        if not self.is_open:
            raise ChannelIOError(f"{self.port} is not open")
        try:
            self._serial.write(data)  # type: ignore[union-attr]
        except (serial.SerialException, OSError) as exc:
            raise ChannelIOError(f"Write to {self.port} failed: {exc}") from exc

    def read(self, size: int) -> bytes:
        if not self.is_open:
            raise ChannelIOError(f"{self.port} is not open")
        try:
            return self._serial.read(size)  # type: ignore[union-attr]
        except (serial.SerialException, OSError) as exc:
            raise ChannelIOError(f"Read from {self.port} failed: {exc}") from exc

    def discard_input(self) -> None:
        if self.is_open:
            try:
                self._serial.reset_input_buffer()  # type: ignore[union-attr]
            except (serial.SerialException, OSError) as exc:
                logger.warning("Could not flush %s: %s", self.port, exc)


# ---------------------------------------------------------------------------
# Background reader
# ---------------------------------------------------------------------------


class ReaderThreadChannel(EndpointChannel):
    """Turn a stream channel into an endpoint channel.

    A daemon thread reads length-prefixed replies from *inner* and hands
    each complete buffer (prefix included) to the receive callback.  The
    callback runs on the reader thread and must return quickly.

    Parameters
    ----------
    inner : StreamChannel
        Channel to read from.  Owned by this wrapper.
    """

    delivers_prefixed = True

    def __init__(self, inner: StreamChannel) -> None:
        self._inner = inner
        self._callback: ReceiveCallback | None = None
        self._rx_buf = bytearray()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_open(self) -> bool:
        return self._inner.is_open

    def open(self) -> None:
        try:
            self._inner.open()
        finally:
            # Also covers ChannelAlreadyOpen: the port is live, so read it.
            if self._inner.is_open:
                self._start_reader()

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._inner.close()
        self._rx_buf.clear()

    def write(self, data: bytes) -> None:
        self._inner.write(data)

    def on_receive(self, callback: ReceiveCallback | None) -> None:
        self._callback = callback

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------

    def _start_reader(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._rx_buf.clear()
        self._thread = threading.Thread(
            target=self._read_loop, name="brick-reader", daemon=True,
        )
        self._thread.start()

    def _read_loop(self) -> None:
        while not self._stop.is_set():
            try:
                chunk = self._inner.read(self._bytes_wanted())
            except ChannelIOError as exc:
                if not self._stop.is_set():
                    logger.warning("RX error: %s", exc)
                    self._stop.wait(0.1)
                continue
            if chunk:
                self._rx_buf.extend(chunk)
                self._dispatch_frames()

    def _bytes_wanted(self) -> int:
        """Bytes still missing from the frame at the head of the buffer."""
        if len(self._rx_buf) < LENGTH_PREFIX_SIZE:
            return LENGTH_PREFIX_SIZE - len(self._rx_buf)
        (length,) = struct.unpack_from("<H", self._rx_buf, 0)
        return max(1, LENGTH_PREFIX_SIZE + length - len(self._rx_buf))

    def _dispatch_frames(self) -> None:
        while len(self._rx_buf) >= LENGTH_PREFIX_SIZE:
            (length,) = struct.unpack_from("<H", self._rx_buf, 0)
            if length == 0 or length > MAX_BODY_LENGTH:
                # Out of sync -- slide one byte and look again.
                del self._rx_buf[0]
                continue
            frame_size = LENGTH_PREFIX_SIZE + length
            if len(self._rx_buf) < frame_size:
                return
            frame = bytes(self._rx_buf[:frame_size])
            del self._rx_buf[:frame_size]
            callback = self._callback
            if callback is None:
                logger.debug("RX frame dropped (no receiver): %s", frame.hex(" "))
                continue
            try:
                callback(frame)
            except Exception as exc:  # noqa: BLE001
                logger.error("Receive callback error: %s", exc)
