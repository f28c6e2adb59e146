"""Badge discovery over the system's serial ports.

This module provides:
- Port enumeration (find_candidate_ports)
- Identity probing (probe_port, is_badge_port)
- Periodic, deduplicated search (DiscoveryManager)
"""

from .finder import (
    PortInfo,
    find_candidate_ports,
    is_badge_port,
    probe_port,
)
from .manager import DiscoveryManager

__all__ = [
    'PortInfo',
    'find_candidate_ports',
    'is_badge_port',
    'probe_port',
    'DiscoveryManager',
]
