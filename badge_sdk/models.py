"""Data models for badge sessions, storage and transfers.

Value objects are frozen dataclasses so they can be handed to callbacks on
other threads. TransferJob is the one mutable record; it is owned by the
transfer engine for the lifetime of a single transfer.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Tuple

from .errors import ProtocolViolation

MAX_FILENAME_LENGTH = 40
LED_BITS_MIN = 1
LED_BITS_MAX = 127
ALL_LEDS = LED_BITS_MAX


class SessionState(Enum):
    """Lifecycle states of a DeviceSession."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BUSY = "busy"
    FAULTED = "faulted"


class TransferDirection(Enum):
    """Direction of a file transfer."""
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class DeviceIdentity:
    """Identity reported by a badge during the connection handshake.

    Attributes:
        name: Display name of the device (e.g. 'busytag-A1B2C3')
        manufacturer: Manufacturer string
        device_id: Unique device identifier
        firmware_version: Firmware version string
    """
    name: str
    manufacturer: Optional[str] = None
    device_id: Optional[str] = None
    firmware_version: Optional[str] = None


@dataclass(frozen=True)
class FileEntry:
    """A file stored in the badge flash.

    Attributes:
        name: File name (at most MAX_FILENAME_LENGTH characters)
        size: Size in bytes
    """
    name: str
    size: int


@dataclass(frozen=True)
class StorageSnapshot:
    """Cached storage figures. Each field is refreshed independently.

    Attributes:
        total_bytes: Total flash capacity, or None if never queried
        free_bytes: Free flash space, or None if never queried
    """
    total_bytes: Optional[int] = None
    free_bytes: Optional[int] = None

    @property
    def used_bytes(self) -> Optional[int]:
        """Used space, only when both figures are known."""
        if self.total_bytes is None or self.free_bytes is None:
            return None
        return self.total_bytes - self.free_bytes


@dataclass(frozen=True)
class Color:
    """An RGB colour, each channel 0-255."""
    red: int
    green: int
    blue: int

    def __post_init__(self):
        for channel, value in (("red", self.red), ("green", self.green), ("blue", self.blue)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{channel} must be an int, got {value!r}")
            if not 0 <= value <= 255:
                raise ValueError(f"{channel} must be in 0-255, got {value}")

    @property
    def hex(self) -> str:
        """Colour as RRGGBB (upper case, no '#')."""
        return f"{self.red:02X}{self.green:02X}{self.blue:02X}"

    @classmethod
    def from_hex(cls, value: str) -> Color:
        """Parse 'RRGGBB' or '#RRGGBB'."""
        text = value.strip().lstrip("#")
        if len(text) != 6:
            raise ValueError(f"Invalid hex colour: {value!r}")
        try:
            return cls(int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16))
        except ValueError:
            raise ValueError(f"Invalid hex colour: {value!r}") from None


@dataclass(frozen=True)
class PatternStep:
    """One line of a custom LED pattern.

    Attributes:
        color: Colour shown during this step
        duration_ms: How long the step lasts
        transition: Fade into the next step instead of switching hard
        led_bits: LED selection mask for this step (1-127)
    """
    color: Color
    duration_ms: int
    transition: bool = False
    led_bits: int = ALL_LEDS

    def __post_init__(self):
        if self.duration_ms < 0:
            raise ValueError(f"duration_ms must be >= 0, got {self.duration_ms}")
        validate_led_bits(self.led_bits)


@dataclass(frozen=True)
class DiscoverySnapshot:
    """Set of ports currently recognized as badges.

    Ports are kept sorted so snapshots print and compare predictably.
    """
    ports: Tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def of(cls, ports: Iterable[str], timestamp: Optional[float] = None) -> DiscoverySnapshot:
        if timestamp is None:
            timestamp = time.time()
        return cls(ports=tuple(sorted(set(ports))), timestamp=timestamp)

    def same_members(self, other: Optional[DiscoverySnapshot]) -> bool:
        """Order-insensitive membership comparison."""
        if other is None:
            return False
        return set(self.ports) == set(other.ports)

    def __len__(self) -> int:
        return len(self.ports)


class TransferJob:
    """Book-keeping for one in-flight transfer.

    bytes_completed never exceeds total_size; advance() raises
    ProtocolViolation if the device pushes it past the declared total.
    """

    def __init__(self,
                 direction: TransferDirection,
                 filename: str,
                 total_size: int,
                 chunk_size: int):
        self.direction = direction
        self.filename = filename
        self.total_size = total_size
        self.chunk_size = chunk_size
        self.bytes_completed = 0
        self.cancelled_at: Optional[float] = None  # time.monotonic() of the first cancel
        self._cancelled = threading.Event()

    @property
    def percent(self) -> float:
        if self.total_size <= 0:
            return 100.0
        return self.bytes_completed / self.total_size * 100.0

    @property
    def chunk_count(self) -> int:
        """Number of chunks needed to move total_size bytes (at least one)."""
        if self.total_size <= 0:
            return 1
        return math.ceil(self.total_size / self.chunk_size)

    @property
    def is_complete(self) -> bool:
        return self.bytes_completed >= self.total_size

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if self.cancelled_at is None:
            self.cancelled_at = time.monotonic()
        self._cancelled.set()

    def advance(self, count: int) -> None:
        if self.bytes_completed + count > self.total_size:
            raise ProtocolViolation(
                f"{self.direction.value} of {self.filename} overran declared size "
                f"({self.bytes_completed + count} > {self.total_size})"
            )
        self.bytes_completed += count

    def __repr__(self) -> str:
        return (f"TransferJob({self.direction.value}, {self.filename!r}, "
                f"{self.bytes_completed}/{self.total_size})")


def validate_led_bits(led_bits: int) -> int:
    """Range-check an LED selection mask. The mask itself is opaque."""
    if not isinstance(led_bits, int) or isinstance(led_bits, bool):
        raise ValueError(f"led_bits must be an int, got {led_bits!r}")
    if not LED_BITS_MIN <= led_bits <= LED_BITS_MAX:
        raise ValueError(f"led_bits must be in {LED_BITS_MIN}-{LED_BITS_MAX}, got {led_bits}")
    return led_bits


def validate_filename(name: str) -> str:
    """Check a device file name against the flash file system limits."""
    if not name:
        raise ValueError("File name must not be empty")
    if len(name) > MAX_FILENAME_LENGTH:
        raise ValueError(
            f"File name too long ({len(name)} > {MAX_FILENAME_LENGTH}): {name!r}"
        )
    if any(ch in name for ch in ",\r\n"):
        raise ValueError(f"File name contains reserved characters: {name!r}")
    return name
