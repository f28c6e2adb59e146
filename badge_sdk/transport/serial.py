"""USB CDC serial transport for badges.

The badge enumerates as a USB CDC serial device and talks a line-framed
ASCII protocol. This module handles:
- Opening/closing the serial port at the fixed framing
- A background reader thread feeding a LineBuffer
- Line-level send/receive with per-call timeouts

Note: This is a LINE layer. It does not interpret messages; use
      CommandDispatcher for request/response handling.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

import serial

from ..errors import CommandTimeout, LinkError, PortUnavailable
from .base import Transport
from .buffer import LineBuffer

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115_200
READ_TIMEOUT = 0.05  # seconds, poll granularity of the reader thread
WRITE_TIMEOUT = 2.0  # seconds
READ_CHUNK_SIZE = 4096  # bytes
LINE_TERMINATOR = b"\r\n"
ENCODING = "utf-8"


class SerialTransport(Transport):
    """Line-framed pyserial link to one badge.

    Example:
        >>> link = SerialTransport()
        >>> link.open("/dev/ttyACM0")
        >>> link.send_line("AT+GDN")
        >>> link.receive_line(timeout=1.0)
        '+DN:busytag-A1B2C3'
        >>> link.close()
    """

    def __init__(self,
                 baudrate: int = DEFAULT_BAUDRATE,
                 read_timeout: float = READ_TIMEOUT,
                 write_timeout: float = WRITE_TIMEOUT,
                 chunk_size: int = READ_CHUNK_SIZE):
        """Initialize transport.

        Args:
            baudrate: Serial baud rate (default 115200, 8N1)
            read_timeout: Reader thread poll interval in seconds
            write_timeout: Write timeout in seconds
            chunk_size: Maximum bytes to read per chunk
        """
        self._baudrate = baudrate
        self._read_timeout = read_timeout
        self._write_timeout = write_timeout
        self._chunk_size = chunk_size

        self._port: Optional[str] = None
        self._serial: Optional[serial.Serial] = None
        self._buffer = LineBuffer()

        self._active = False
        self._link_lost: Optional[Exception] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._write_lock = threading.Lock()

    @property
    def port(self) -> Optional[str]:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._link_lost is None

    def open(self, port: str) -> None:
        """Open the serial port and start the reader thread.

        Raises:
            PortUnavailable: Port missing, busy or access denied
        """
        if self._serial is not None:
            if self._port == port and self._link_lost is None:
                logger.warning(f"{port} already open")
                return
            self.close()

        try:
            self._serial = serial.Serial(
                port=port,
                baudrate=self._baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self._read_timeout,
                write_timeout=self._write_timeout,
            )
            self._serial.reset_input_buffer()
            self._serial.reset_output_buffer()
        except (serial.SerialException, OSError, ValueError) as e:
            self._serial = None
            raise PortUnavailable(f"Failed to open {port}: {e}") from e

        self._port = port
        self._link_lost = None
        self._buffer.reopen()
        self._active = True
        self._start_reader_thread()
        logger.info(f"Opened {port} @ {self._baudrate} baud")

    def close(self) -> None:
        """Stop the reader thread and close the port."""
        self._active = False
        self._buffer.close()

        if self._reader_thread and self._reader_thread.is_alive() \
                and self._reader_thread is not threading.current_thread():
            self._reader_thread.join(timeout=1.0)
        self._reader_thread = None

        if self._serial is not None:
            try:
                self._serial.close()
            except Exception as e:
                logger.error(f"Error closing serial port: {e}")
            finally:
                self._serial = None
            logger.info(f"Closed {self._port}")

    def send_line(self, line: str) -> None:
        """Write one line followed by CRLF.

        Raises:
            LinkError: Port not open or write failed
        """
        if not self.is_open:
            raise LinkError("Cannot send, link is not open")

        data = line.encode(ENCODING) + LINE_TERMINATOR
        try:
            with self._write_lock:
                self._serial.write(data)
                self._serial.flush()
        except (serial.SerialException, OSError) as e:
            logger.error(f"Send error on {self._port}: {e}")
            self._handle_error(e)
            raise LinkError(f"Write to {self._port} failed: {e}") from e
        logger.debug(f"{self._port} <- {line[:80]}")

    def receive_line(self, timeout: float) -> str:
        """Wait for one complete line.

        Raises:
            CommandTimeout: No complete line within timeout
            LinkError: Connection dropped or link not open
        """
        if self._serial is None and self._link_lost is None:
            raise LinkError("Cannot receive, link is not open")

        raw = self._buffer.read_line(timeout)
        if raw is not None:
            line = raw.decode(ENCODING, errors="replace")
            logger.debug(f"{self._port} -> {line[:80]}")
            return line

        if self._link_lost is not None:
            raise LinkError(f"Link to {self._port} lost: {self._link_lost}")
        if self._serial is None:
            raise LinkError("Link closed")
        raise CommandTimeout(f"No line from {self._port} within {timeout:.2f}s")

    # Internal methods

    def _start_reader_thread(self) -> None:
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name=f"BadgeReader-{self._port}"
        )
        self._reader_thread.start()

    def _reader_loop(self) -> None:
        """Read raw bytes from the port into the line buffer."""
        logger.debug("Reader thread started")
        ser = self._serial

        while self._active and ser is not None:
            try:
                waiting = ser.in_waiting
                chunk = ser.read(min(max(waiting, 1), self._chunk_size))
                if chunk:
                    self._buffer.write(chunk)
            except (serial.SerialException, OSError, TypeError, AttributeError) as e:
                # TypeError/AttributeError: pyserial raises these when the fd
                # is torn down under a blocking read during close().
                if self._active:
                    logger.error(f"Serial read error: {e}")
                    self._handle_error(e)
                break

        logger.debug("Reader thread exiting")

    def _handle_error(self, error: Exception) -> None:
        """Mark the link as lost and wake any waiting reader.

        Does not join threads to avoid deadlock if called from reader thread.
        """
        self._link_lost = error
        self._active = False
        self._buffer.close()
