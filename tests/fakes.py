"""In-memory stand-ins for a badge on a serial port."""
import base64
import queue
import threading

from badge_sdk.errors import CommandTimeout, LinkError, PortUnavailable
from badge_sdk.transport.base import Transport

_LOST = object()

IDENTITY_REPLIES = {
    "AT+GDN": ["+DN:busytag-A1B2C3", "OK"],
    "AT+GMN": ["+MN:Busy Tag", "OK"],
    "AT+GID": ["+ID:A1B2C3", "OK"],
    "AT+GFV": ["+FV:2.1.0", "OK"],
    "AT+GP": ["+SP:coffee.png", "OK"],
}


class FakeTransport(Transport):
    """Scripted transport.

    Replies are looked up by the full request line first, then by the
    command mnemonic (text before '='). A reply is a list of lines or a
    callable taking the request line and returning one. Requests without a
    reply go unanswered, so the command times out.
    """

    def __init__(self, replies=None, handler=None, open_error=None):
        self.replies = dict(IDENTITY_REPLIES)
        self.replies.update(replies or {})
        self.handler = handler
        self.open_error = open_error
        self.sent = []
        self.open_count = 0
        self.close_count = 0
        self._lines = queue.Queue()
        self._open = False
        self._port = None
        self._lost = None
        self._lock = threading.Lock()

    @property
    def is_open(self):
        return self._open and self._lost is None

    @property
    def port(self):
        return self._port

    def open(self, port):
        if self.open_error is not None:
            raise self.open_error
        self.open_count += 1
        self._port = port
        self._open = True

    def close(self):
        self.close_count += 1
        self._open = False

    def send_line(self, line):
        if self._lost is not None:
            raise LinkError(f"lost: {self._lost}")
        if not self._open:
            raise LinkError("not open")
        with self._lock:
            self.sent.append(line)
        for reply in self._reply_for(line):
            self._lines.put(reply)

    def receive_line(self, timeout):
        try:
            item = self._lines.get(timeout=max(timeout, 0))
        except queue.Empty:
            if not self._open and self._lost is None:
                raise LinkError("closed")
            raise CommandTimeout("no line")
        if item is _LOST:
            self._lines.put(_LOST)
            raise LinkError(f"lost: {self._lost}")
        return item

    # Test controls

    def push(self, line):
        """Deliver an unsolicited line."""
        self._lines.put(line)

    def fail(self, error="device unplugged"):
        """Simulate the cable being pulled."""
        self._lost = error
        self._lines.put(_LOST)

    def sent_commands(self):
        """Mnemonics of every request sent so far."""
        with self._lock:
            return [line.split("=", 1)[0] for line in self.sent]

    def _reply_for(self, line):
        if self.handler is not None:
            result = self.handler(line)
            if result is not None:
                return result
        reply = self.replies.get(line)
        if reply is None:
            reply = self.replies.get(line.split("=", 1)[0])
        if reply is None:
            return []
        if callable(reply):
            return reply(line)
        return list(reply)


class FakeStorage:
    """Handler emulating the badge's file transfer commands.

    Use as FakeTransport(handler=FakeStorage()). Other commands fall
    through to the transport's reply table.
    """

    def __init__(self, files=None, free_bytes=1_000_000, segment_size=None):
        self.files = dict(files or {})
        self.free_bytes = free_bytes
        self.segment_size = segment_size
        self.chunk_count = 0
        self.aborted = False
        self._upload_name = None
        self._upload_size = 0
        self._received = bytearray()
        self._reading = None
        self._read_pos = 0

    def __call__(self, line):
        command, _, args = line.partition("=")
        if command == "AT+UF":
            name, size = args.rsplit(",", 1)
            if int(size) > self.free_bytes:
                return ["ERROR:no space"]
            self._upload_name = name
            self._upload_size = int(size)
            self._received = bytearray()
            return ["+UF:READY", "OK"]
        if command == "AT+UD":
            _, encoded = args.split(",", 1)
            self._received.extend(base64.b64decode(encoded))
            self.chunk_count += 1
            return [f"+UD:{len(self._received)}", "OK"]
        if command == "AT+UE":
            self.files[self._upload_name] = bytes(self._received)
            return ["+UE:OK", "OK"]
        if command == "AT+UA":
            self.aborted = True
            return ["OK"]
        if command == "AT+GF":
            if args not in self.files:
                return ["ERROR:not found"]
            self._reading = self.files[args]
            self._read_pos = 0
            return [f"+GF:{len(self._reading)}", "OK"]
        if command == "AT+RD":
            size = int(args)
            if self.segment_size is not None:
                size = min(size, self.segment_size)
            data = self._reading[self._read_pos:self._read_pos + size]
            self._read_pos += len(data)
            return [f"+RD:{len(data)},{base64.b64encode(data).decode('ascii')}", "OK"]
        return None


class PortUnavailableFactory:
    """transport_factory whose transports can never be opened."""

    def __call__(self):
        return FakeTransport(open_error=PortUnavailable("no such port"))
