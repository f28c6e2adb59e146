"""Response parsing for the badge AT protocol.

Every response ends with a terminal OK or ERROR[:reason] line, optionally
preceded by value lines of the form +XX:<payload>. Device-initiated pushes
use the +evn: prefix and never belong to a pending command.
"""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from ..errors import ProtocolViolation
from ..models import FileEntry

OK = "OK"
ERROR = "ERROR"
EVENT_PREFIX = "+evn:"


class Verdict(Enum):
    """How a response matcher classifies one incoming line."""
    IGNORE = "ignore"        # not part of this response (unsolicited)
    PART = "part"            # value line belonging to this response
    DONE = "done"            # terminal success line
    REJECT = "reject"        # terminal ERROR line
    VIOLATION = "violation"  # desynchronized: wrong reply shape


@dataclass
class Response:
    """Lines claimed by a matcher for one command, terminal line last."""
    lines: List[str] = field(default_factory=list)

    @property
    def terminal(self) -> Optional[str]:
        return self.lines[-1] if self.lines else None

    def values(self, prefix: str) -> List[str]:
        """Payloads of every line starting with prefix."""
        return [line[len(prefix):] for line in self.lines if line.startswith(prefix)]

    def value(self, prefix: str) -> str:
        """Payload of the single value line with prefix.

        Raises:
            ProtocolViolation: The response carried no such line
        """
        values = self.values(prefix)
        if not values:
            raise ProtocolViolation(f"Response missing {prefix!r} line: {self.lines}")
        return values[0]


class ResponseMatcher:
    """Decides which incoming lines belong to a pending command.

    Args:
        prefix: Value-line prefix this command expects (e.g. '+DN:'), or
            None for commands answered by a bare OK
        multi: Accept any number of value lines (listings)
    """

    def __init__(self, prefix: Optional[str] = None, multi: bool = False):
        self.prefix = prefix
        self.multi = multi
        self._seen = 0

    def __call__(self, line: str) -> Verdict:
        text = line.strip()
        if not text or text.startswith(EVENT_PREFIX):
            return Verdict.IGNORE
        if text == OK:
            if self.prefix is not None and not self.multi and self._seen == 0:
                return Verdict.VIOLATION
            return Verdict.DONE
        if text == ERROR or text.startswith(ERROR + ":"):
            return Verdict.REJECT
        if self.prefix is not None and text.startswith(self.prefix):
            self._seen += 1
            if self._seen > 1 and not self.multi:
                return Verdict.VIOLATION
            return Verdict.PART
        if text.startswith("+"):
            # A value line for some other command
            return Verdict.VIOLATION
        return Verdict.IGNORE

    def __repr__(self) -> str:
        return f"ResponseMatcher(prefix={self.prefix!r}, multi={self.multi})"


def expect_ok() -> ResponseMatcher:
    return ResponseMatcher()


def expect_value(prefix: str) -> ResponseMatcher:
    return ResponseMatcher(prefix=prefix)


def expect_lines(prefix: str) -> ResponseMatcher:
    return ResponseMatcher(prefix=prefix, multi=True)


def error_reason(line: str) -> Optional[str]:
    """Reason text of an ERROR:<reason> line, or None."""
    text = line.strip()
    if text.startswith(ERROR + ":"):
        return text[len(ERROR) + 1:].strip() or None
    return None


# Unsolicited events

class EventKind(Enum):
    """Device-initiated pushes."""
    NOW_DISPLAYING = "SP"
    FIRMWARE_PROGRESS = "FUP"
    WRITING_IN_STORAGE = "WIS"
    UNKNOWN = "?"


@dataclass(frozen=True)
class DeviceEvent:
    """A parsed unsolicited push.

    Attributes:
        kind: Event type
        value: Parsed payload (str for NOW_DISPLAYING, float for
            FIRMWARE_PROGRESS, bool for WRITING_IN_STORAGE, raw line otherwise)
    """
    kind: EventKind
    value: Union[str, float, bool]


def parse_event(line: str) -> DeviceEvent:
    """Classify a line nobody claimed.

    Examples:
        >>> parse_event("+evn:SP,coffee.png")
        DeviceEvent(kind=<EventKind.NOW_DISPLAYING: 'SP'>, value='coffee.png')
        >>> parse_event("+evn:FUP,42.5").value
        42.5
    """
    text = line.strip()
    if not text.startswith(EVENT_PREFIX):
        return DeviceEvent(EventKind.UNKNOWN, text)

    code, _, payload = text[len(EVENT_PREFIX):].partition(",")
    payload = payload.strip()
    try:
        if code == EventKind.NOW_DISPLAYING.value:
            return DeviceEvent(EventKind.NOW_DISPLAYING, payload)
        if code == EventKind.FIRMWARE_PROGRESS.value:
            return DeviceEvent(EventKind.FIRMWARE_PROGRESS, float(payload))
        if code == EventKind.WRITING_IN_STORAGE.value:
            return DeviceEvent(EventKind.WRITING_IN_STORAGE, payload == "1")
    except ValueError:
        pass
    return DeviceEvent(EventKind.UNKNOWN, text)


# Payload parsers

def parse_int(payload: str, what: str = "value") -> int:
    try:
        return int(payload.strip())
    except ValueError:
        raise ProtocolViolation(f"Expected integer {what}, got {payload!r}") from None


def parse_file_entry(payload: str) -> FileEntry:
    """Parse '<name>,<size>' from a +FL: line."""
    name, sep, size = payload.rpartition(",")
    if not sep or not name:
        raise ProtocolViolation(f"Malformed file entry: {payload!r}")
    return FileEntry(name=name, size=parse_int(size, "file size"))


def parse_chunk(payload: str) -> bytes:
    """Parse '<len>,<base64>' from a +RD: line and check the length."""
    length, sep, encoded = payload.partition(",")
    if not sep:
        raise ProtocolViolation(f"Malformed data segment: {payload[:40]!r}")
    expected = parse_int(length, "segment length")
    try:
        data = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolViolation(f"Undecodable data segment: {e}") from e
    if len(data) != expected:
        raise ProtocolViolation(
            f"Segment length mismatch: header says {expected}, got {len(data)}"
        )
    return data
