"""Serial port enumeration and badge identity probing."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from serial.tools import list_ports

from ..errors import BadgeError
from ..models import DeviceIdentity
from ..protocol import commands
from ..protocol.dispatcher import CommandDispatcher
from ..protocol.parser import expect_value
from ..transport.base import Transport
from ..transport.serial import SerialTransport

logger = logging.getLogger(__name__)

DEFAULT_NAME_PREFIX = "busytag"
DEFAULT_PROBE_TIMEOUT = 0.5  # seconds


@dataclass(frozen=True)
class PortInfo:
    """A serial port a badge may be attached to.

    Attributes:
        port: Name to open (e.g. 'COM3', '/dev/ttyACM0')
        description: Description reported by the OS, may be empty
        vid: USB vendor id, None for ports that are not USB devices
    """
    port: str
    description: str = ""
    vid: Optional[int] = None

    @property
    def is_usb(self) -> bool:
        return self.vid is not None


def find_candidate_ports(matcher: Optional[Callable[[PortInfo], bool]] = None) -> List[PortInfo]:
    """List serial ports worth probing.

    Every port is a candidate by default; the identity probe decides what is
    a badge. A matcher only narrows the list, e.g. ``lambda p: p.is_usb`` to
    skip built-in UARTs that would each cost a probe timeout.
    """
    ports = [
        PortInfo(port=p.device, description=p.description or "", vid=p.vid)
        for p in list_ports.comports()
    ]
    if matcher is not None:
        ports = [info for info in ports if matcher(info)]
    return ports


def probe_port(
    port: str,
    *,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    name_prefix: str = DEFAULT_NAME_PREFIX,
    transport_factory: Callable[[], Transport] = SerialTransport,
) -> Optional[DeviceIdentity]:
    """
    Ask the device on port for its name over a throwaway link.

    The probe only reads the device name, so it has no side effects on the
    badge. Do not probe a port a live session owns; DiscoveryManager
    skips ports claimed by a session.

    Returns:
        DeviceIdentity (name only) if the port hosts a badge, None if
        something else answered.

    Raises:
        BadgeError: Port could not be opened or did not answer in time
    """
    transport = transport_factory()
    dispatcher = CommandDispatcher(transport, default_timeout=timeout)
    try:
        transport.open(port)
        dispatcher.start()
        response = dispatcher.execute(commands.GET_DEVICE_NAME, expect_value("+DN:"), timeout)
        name = response.value("+DN:").strip()
    finally:
        dispatcher.close()
        transport.close()

    if not name.lower().startswith(name_prefix.lower()):
        logger.debug(f"{port} answered as {name!r}, not a badge")
        return None
    return DeviceIdentity(name=name)


def is_badge_port(port: str, **probe_kwargs) -> bool:
    """True if port currently hosts a badge; probe errors count as False."""
    try:
        return probe_port(port, **probe_kwargs) is not None
    except BadgeError as e:
        logger.debug(f"Probe of {port} failed: {e}")
        return False
