"""Transport layer for badge communication."""

from .base import Transport
from .buffer import LineBuffer
from .serial import SerialTransport

__all__ = ["Transport", "SerialTransport", "LineBuffer"]
