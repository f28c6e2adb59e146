"""Line buffer between the serial reader thread and the command dispatcher.

Provides a thread-safe FIFO byte buffer with overwrite-on-overflow behavior
and a blocking line read.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 256 * 1024  # 256KB


class LineBuffer:
    """Thread-safe byte buffer with FIFO line reads and overwrite-on-overflow writes."""

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        """Initialize buffer.

        Args:
            max_size: Maximum buffer size in bytes. If exceeded, oldest data is dropped.
        """
        self._max_size = max_size
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._overflow_count = 0
        self._closed = False

    def write(self, data: bytes) -> None:
        """Append data and wake any reader waiting for a line.

        If buffer becomes full, oldest data is dropped to make room.
        """
        if not data:
            return

        with self._cond:
            if len(data) >= self._max_size:
                self._buffer = bytearray(data[-self._max_size:])
                self._overflow_count += 1
                logger.warning("Buffer overflow: Input chunk larger than buffer, data lost.")
            else:
                new_len = len(self._buffer) + len(data)
                if new_len > self._max_size:
                    drop_count = new_len - self._max_size
                    del self._buffer[:drop_count]
                    self._overflow_count += 1
                    if self._overflow_count % 100 == 1:
                        logger.warning(f"Buffer overflow: Dropped {drop_count} bytes of old data.")
                self._buffer.extend(data)
            self._cond.notify_all()

    def read_line(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Pop one line terminated by \\n.

        Args:
            timeout: Seconds to wait for a complete line. None waits forever,
                0 checks once.

        Returns:
            Line bytes without the trailing \\r\\n, or None if no complete line
            arrived in time (or the buffer was closed).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                idx = self._buffer.find(b"\n")
                if idx != -1:
                    line = bytes(self._buffer[:idx])
                    del self._buffer[:idx + 1]
                    return line.rstrip(b"\r")
                if self._closed:
                    return None
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def close(self) -> None:
        """Wake every waiting reader; pending complete lines stay readable."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        with self._cond:
            self._closed = False
            self._buffer.clear()

    @property
    def size(self) -> int:
        """Current number of bytes in buffer."""
        with self._cond:
            return len(self._buffer)

    @property
    def overflow_count(self) -> int:
        with self._cond:
            return self._overflow_count

    def clear(self) -> None:
        """Clear buffer."""
        with self._cond:
            self._buffer.clear()
