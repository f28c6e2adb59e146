"""Command serializer for the badge AT protocol.

Converts typed requests into request lines. Pure functions with no side
effects; the transport appends the line terminator.
"""
from __future__ import annotations

import base64
from typing import Sequence

from ..models import Color, PatternStep, validate_filename, validate_led_bits

# Identity
GET_DEVICE_NAME = "AT+GDN"
GET_MANUFACTURER = "AT+GMN"
GET_DEVICE_ID = "AT+GID"
GET_FIRMWARE_VERSION = "AT+GFV"

# Display
GET_BRIGHTNESS = "AT+GDB"
GET_PICTURE = "AT+GP"

# Storage
GET_FILE_LIST = "AT+GFL"
GET_FREE_STORAGE = "AT+GFSS"
GET_TOTAL_STORAGE = "AT+GTSS"
ACTIVATE_STORAGE_SCAN = "AT+AFSS"
FORMAT_DISK = "AT+FD"
RESTART = "AT+RST"

# Transfer
UPLOAD_END = "AT+UE"
TRANSFER_ABORT = "AT+UA"


def set_color(color: Color, led_bits: int) -> str:
    """Protocol: AT+SC=<led_bits>,<RRGGBB>"""
    validate_led_bits(led_bits)
    return f"AT+SC={led_bits},{color.hex}"


def set_pattern(steps: Sequence[PatternStep], loop: bool, priority: bool) -> str:
    """Encode a whole custom pattern into one command.

    Protocol: AT+CP=<loop>,<priority>,<n>;<bits>,<RRGGBB>,<ms>,<trans>;...
    """
    if not steps:
        raise ValueError("A pattern needs at least one step")
    parts = [f"AT+CP={int(loop)},{int(priority)},{len(steps)}"]
    for step in steps:
        parts.append(
            f"{step.led_bits},{step.color.hex},{step.duration_ms},{int(step.transition)}"
        )
    return ";".join(parts)


def set_brightness(level: int) -> str:
    """Protocol: AT+SDB=<0-100>"""
    if not isinstance(level, int) or isinstance(level, bool) or not 0 <= level <= 100:
        raise ValueError(f"Brightness must be an int in 0-100, got {level!r}")
    return f"AT+SDB={level}"


def show_picture(name: str) -> str:
    return f"AT+SP={validate_filename(name)}"


def delete_file(name: str) -> str:
    return f"AT+DF={validate_filename(name)}"


def upload_begin(name: str, size: int) -> str:
    """Protocol: AT+UF=<name>,<size>"""
    if size < 0:
        raise ValueError(f"Upload size must be >= 0, got {size}")
    return f"AT+UF={validate_filename(name)},{size}"


def upload_chunk(data: bytes) -> str:
    """Protocol: AT+UD=<len>,<base64 payload>"""
    payload = base64.b64encode(data).decode("ascii")
    return f"AT+UD={len(data)},{payload}"


def download_begin(name: str) -> str:
    return f"AT+GF={validate_filename(name)}"


def download_read(max_len: int) -> str:
    """Protocol: AT+RD=<max chunk length>"""
    if max_len <= 0:
        raise ValueError(f"Chunk length must be > 0, got {max_len}")
    return f"AT+RD={max_len}"
