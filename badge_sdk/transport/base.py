"""Abstract base class for the transport layer.

A Transport owns exactly one byte channel to one badge and exposes it as a
line-oriented link. It knows nothing about commands or responses; that is
the dispatcher's job.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class Transport(ABC):
    """Abstract line-framed link to a badge.

    Contract:
    - open() raises PortUnavailable if the port is missing or access is denied
    - send_line() raises LinkError if the write fails
    - receive_line() returns a line, raises CommandTimeout when nothing
      arrives in time, or LinkError if the connection dropped
    - close() is idempotent and always safe, including after a LinkError
    """

    @abstractmethod
    def open(self, port: str) -> None:
        """Open the link to port."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the link. Safe to call multiple times."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

    @property
    @abstractmethod
    def port(self) -> Optional[str]:
        """Port name of the current (or last) connection."""
        pass

    @abstractmethod
    def send_line(self, line: str) -> None:
        """Send one line; the terminator is appended by the transport."""
        pass

    @abstractmethod
    def receive_line(self, timeout: float) -> str:
        """Block until a full line arrives or timeout seconds elapse.

        Returns:
            The decoded line without its terminator
        """
        pass

    def __enter__(self) -> Transport:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager support - close on exit."""
        self.close()
