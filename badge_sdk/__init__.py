"""Badge SDK - host-side session, transfer and discovery engine for USB LED badges."""

from .device import DeviceSession, TransferEngine
from .discovery import DiscoveryManager, find_candidate_ports, probe_port
from .errors import (
    BadgeError,
    PortUnavailable,
    LinkError,
    ProtocolViolation,
    CommandTimeout,
    CommandRejected,
    NotConnected,
    SessionBusy,
    TransferError,
    TransferAborted,
    TransferRejected,
)
from .events import EventHub
from .models import (
    Color,
    DeviceIdentity,
    DiscoverySnapshot,
    FileEntry,
    PatternStep,
    SessionState,
    StorageSnapshot,
    TransferDirection,
    TransferJob,
)
from .transport import SerialTransport, Transport

__version__ = "0.1.0"

__all__ = [
    "DeviceSession",
    "TransferEngine",
    "DiscoveryManager",
    "find_candidate_ports",
    "probe_port",
    "BadgeError",
    "PortUnavailable",
    "LinkError",
    "ProtocolViolation",
    "CommandTimeout",
    "CommandRejected",
    "NotConnected",
    "SessionBusy",
    "TransferError",
    "TransferAborted",
    "TransferRejected",
    "EventHub",
    "Color",
    "DeviceIdentity",
    "DiscoverySnapshot",
    "FileEntry",
    "PatternStep",
    "SessionState",
    "StorageSnapshot",
    "TransferDirection",
    "TransferJob",
    "SerialTransport",
    "Transport",
]
