"""Periodic, deduplicated badge discovery."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable, List, Optional, Set

from ..errors import BadgeError
from ..events import DEVICES_CHANGED, EventHub
from ..models import DeviceIdentity, DiscoverySnapshot
from .finder import PortInfo, find_candidate_ports, probe_port

logger = logging.getLogger(__name__)

DEFAULT_SCAN_INTERVAL = 2.0  # seconds
DEFAULT_QUIET_INTERVAL = 30.0  # seconds
PROBE_WAIT_TIMEOUT = 5.0  # seconds


class DiscoveryManager:
    """Scans serial ports for badges and reports meaningful changes.

    Each scan lists the system's serial ports, probes every port not known to
    host something else, and builds a fresh DiscoverySnapshot. Subscribers of
    'devices_changed' receive the sorted port list:
    - immediately when membership changed since the previous scan
    - otherwise, for a non-empty set, at most once per quiet interval
      (a heartbeat for collaborators)
    An unchanged empty set is never re-announced, so the very first scan
    only notifies when a badge is actually present.

    Probe failures are expected (ports come and go); the port is left out of
    the snapshot and retried on the next cycle.

    Example:
        >>> manager = DiscoveryManager()
        >>> manager.events.subscribe("devices_changed", print)
        >>> manager.start_periodic_search(2000)
        ['/dev/ttyACM0']
        >>> manager.stop_periodic_search()
    """

    def __init__(self,
                 quiet_interval: float = DEFAULT_QUIET_INTERVAL,
                 port_lister: Callable[[], List[PortInfo]] = find_candidate_ports,
                 probe: Callable[[str], Optional[DeviceIdentity]] = probe_port,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize discovery.

        Args:
            quiet_interval: Seconds between repeated notifications of an
                unchanged, non-empty device set
            port_lister: Returns candidate ports (default: all serial ports)
            probe: Returns an identity for badge ports, None for foreign
                devices, raises BadgeError when the port could not be probed
            clock: Monotonic time source
        """
        self._quiet_interval = quiet_interval
        self._port_lister = port_lister
        self._probe = probe
        self._clock = clock

        self.events = EventHub()

        self._snapshot = DiscoverySnapshot()
        self._last_notified: Optional[float] = None
        self._known_invalid: Set[str] = set()
        self._claimed: Set[str] = set()
        self._probing: Optional[str] = None
        self._lock = threading.Lock()
        self._probe_done = threading.Condition(self._lock)

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._interval = DEFAULT_SCAN_INTERVAL

    @property
    def snapshot(self) -> DiscoverySnapshot:
        """Result of the most recent scan."""
        with self._lock:
            return self._snapshot

    @property
    def is_searching(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def claim(self, port: str) -> None:
        """Mark port as owned by a live session.

        Claimed ports count as present without being probed, so discovery
        never opens a channel a session is using. If a probe of port is in
        flight, this waits for it to close its link first.
        """
        with self._lock:
            self._claimed.add(port)
            if not self._probe_done.wait_for(lambda: self._probing != port,
                                             timeout=PROBE_WAIT_TIMEOUT):
                logger.warning(f"Probe of {port} still running after {PROBE_WAIT_TIMEOUT}s")

    def release(self, port: str) -> None:
        with self._lock:
            self._claimed.discard(port)

    def start_periodic_search(self, interval_ms: int = int(DEFAULT_SCAN_INTERVAL * 1000)) -> None:
        """Scan every interval_ms milliseconds on a background thread."""
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be > 0, got {interval_ms}")
        self._interval = interval_ms / 1000.0
        if self.is_searching:
            return

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._search_loop,
            daemon=True,
            name="BadgeDiscovery"
        )
        self._thread.start()
        logger.info(f"Periodic search started (interval={self._interval}s)")

    def stop_periodic_search(self) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self._interval + 5.0)
        logger.info("Periodic search stopped")

    def scan_once(self) -> DiscoverySnapshot:
        """Run one discovery cycle and notify if warranted.

        Returns:
            The new snapshot
        """
        found = self._probe_ports(self._port_lister())
        snapshot = DiscoverySnapshot.of(found)

        notify = False
        with self._lock:
            now = self._clock()
            previous = self._snapshot
            self._snapshot = snapshot
            if not snapshot.same_members(previous):
                notify = True
            elif len(snapshot) > 0 and (
                self._last_notified is None
                or now - self._last_notified > self._quiet_interval
            ):
                notify = True
            if notify:
                self._last_notified = now

        if notify:
            logger.info(f"Badges present: {list(snapshot.ports) or 'none'}")
            self.events.emit(DEVICES_CHANGED, list(snapshot.ports))
        return snapshot

    # Internal methods

    def _probe_ports(self, candidates: Iterable[PortInfo]) -> List[str]:
        names = {info.port for info in candidates}
        with self._lock:
            # Forget foreign devices once they are unplugged
            self._known_invalid &= names

        found: List[str] = []
        for port in sorted(names):
            with self._lock:
                if port in self._claimed:
                    found.append(port)
                    continue
                if port in self._known_invalid:
                    continue
                self._probing = port
            try:
                identity = self._probe(port)
            except BadgeError as e:
                logger.debug(f"{port} not probed: {e}")
                continue
            finally:
                with self._lock:
                    self._probing = None
                    self._probe_done.notify_all()

            if identity is None:
                self._mark_invalid(port)
            else:
                found.append(port)
        return found

    def _mark_invalid(self, port: str) -> None:
        with self._lock:
            self._known_invalid.add(port)

    def _search_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.scan_once()
            except Exception as e:
                logger.error(f"Discovery scan failed: {e}")
            self._stop.wait(self._interval)
