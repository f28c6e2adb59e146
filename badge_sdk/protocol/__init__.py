"""AT protocol layer: command builders, response matching and dispatch."""

from . import commands
from .dispatcher import CommandDispatcher, PendingCommand
from .parser import (
    DeviceEvent,
    EventKind,
    Response,
    ResponseMatcher,
    Verdict,
    expect_lines,
    expect_ok,
    expect_value,
    parse_event,
)

__all__ = [
    "commands",
    "CommandDispatcher",
    "PendingCommand",
    "DeviceEvent",
    "EventKind",
    "Response",
    "ResponseMatcher",
    "Verdict",
    "expect_lines",
    "expect_ok",
    "expect_value",
    "parse_event",
]
