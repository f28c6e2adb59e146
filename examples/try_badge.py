#!/usr/bin/env python3
"""
Interactive Badge Test Script.

Finds a badge, connects, sets a colour, uploads a picture with a progress
readout, shows it, then restarts the badge and reconnects.

Usage:
    python examples/try_badge.py [picture.png]
"""

import sys
import time
import logging
from pathlib import Path

# Add SDK to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from badge_sdk import BadgeError, DeviceSession, DiscoveryManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 3.0  # seconds


def find_badge(discovery: DiscoveryManager) -> str:
    print("Scanning serial ports for badges...")
    ports = discovery.scan_once().ports
    if not ports:
        raise SystemExit("No badge found. Is it plugged in?")
    print(f"Found: {', '.join(ports)}")
    return ports[0]


def reconnect(session: DeviceSession) -> bool:
    """Wait for the badge to come back after a restart."""
    for attempt in range(1, RECONNECT_ATTEMPTS + 1):
        time.sleep(RECONNECT_DELAY)
        try:
            session.connect()
            return True
        except BadgeError as e:
            print(f"Reconnect attempt {attempt}/{RECONNECT_ATTEMPTS} failed: {e}")
    return False


def main():
    discovery = DiscoveryManager()
    session = DeviceSession(port=find_badge(discovery), discovery=discovery)
    session.events.subscribe("now_displaying", lambda name: print(f"\nNow showing: {name}"))
    session.events.subscribe("connection_changed",
                             lambda up: print(f"\nLink {'up' if up else 'down'}"))

    identity = session.connect()
    print(f"Connected to {identity.name} (firmware {identity.firmware_version})")

    # Keep watching for other badges; the connected port is claimed and never probed
    discovery.events.subscribe("devices_changed", lambda ports: print(f"\nBadges present: {ports}"))
    discovery.start_periodic_search(3000)

    try:
        session.set_solid_color("green")
        storage = session.get_storage()
        print(f"Storage: {storage.free_bytes} of {storage.total_bytes} bytes free")

        if len(sys.argv) > 1:
            picture = Path(sys.argv[1])
            with open(picture, "rb") as f:
                session.upload(
                    picture.name,
                    f,
                    progress=lambda pct: print(f"\rUploading {picture.name}: {pct:5.1f}%", end=""),
                )
            print()
            session.show_picture(picture.name)

        for entry in session.list_files():
            print(f"  {entry.name:<40} {entry.size:>8} bytes")

        print("\nRestarting badge...")
        session.restart()
        session.disconnect()
        if reconnect(session):
            print(f"Back online, showing {session.current_image_name}")
        else:
            print("Badge did not come back.")

    except KeyboardInterrupt:
        print("\nInterrupted by user.")
    finally:
        print("\nDisconnecting...")
        discovery.stop_periodic_search()
        session.disconnect()
        print("Done.")


if __name__ == "__main__":
    main()
