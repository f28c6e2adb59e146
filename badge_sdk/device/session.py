"""Connection lifecycle and typed operations for one badge.

A DeviceSession owns one transport, one command dispatcher and one transfer
engine for as long as it is connected. It tracks the session state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED <-> BUSY
                         |            |          |
                         +--------> FAULTED <----+
                                      |
                                      v
                                 DISCONNECTED

Link failures never leave a session half-open: the session moves to FAULTED,
releases everything and settles in DISCONNECTED before the error reaches the
caller. Reconnecting is the caller's decision.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, BinaryIO, Callable, List, Optional, Sequence

from ..discovery.manager import DiscoveryManager
from ..errors import (
    CommandRejected,
    CommandTimeout,
    LinkError,
    NotConnected,
    SessionBusy,
)
from ..events import (
    CONNECTION_CHANGED,
    FIRMWARE_UPDATE_PROGRESS,
    NOW_DISPLAYING,
    UNSOLICITED,
    WRITING_IN_STORAGE,
    EventHub,
)
from ..models import (
    ALL_LEDS,
    Color,
    DeviceIdentity,
    FileEntry,
    PatternStep,
    SessionState,
    StorageSnapshot,
    TransferJob,
    validate_filename,
)
from ..presets import named_color
from ..protocol import commands
from ..protocol.dispatcher import DEFAULT_COMMAND_TIMEOUT, CommandDispatcher
from ..protocol.parser import (
    EventKind,
    Response,
    ResponseMatcher,
    expect_lines,
    expect_value,
    parse_event,
    parse_file_entry,
    parse_int,
)
from ..transport.base import Transport
from ..transport.serial import SerialTransport
from .transfer import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CHUNK_TIMEOUT,
    ProgressCallback,
    TransferEngine,
    remaining_length,
)

logger = logging.getLogger(__name__)

FORMAT_TIMEOUT = 30.0  # seconds, erasing flash is slow
FAULT_CLEANUP_TIMEOUT = 5.0  # seconds
FIRMWARE_SUFFIX = ".bin"

_TRANSITIONS = {
    SessionState.DISCONNECTED: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.DISCONNECTED, SessionState.FAULTED},
    SessionState.CONNECTED: {SessionState.BUSY, SessionState.DISCONNECTED, SessionState.FAULTED},
    SessionState.BUSY: {SessionState.CONNECTED, SessionState.DISCONNECTED, SessionState.FAULTED},
    SessionState.FAULTED: {SessionState.DISCONNECTED},
}


class DeviceSession:
    """One host-side session with one badge.

    Responsibilities:
    - Connect (open + identity handshake) and disconnect
    - Typed display, storage and device commands
    - Uploads and downloads through the TransferEngine (session is BUSY
      meanwhile)
    - Caching identity, file list, storage figures and current picture
    - Turning device pushes into events

    Typed operations are only accepted while CONNECTED. During a transfer
    they raise SessionBusy; in any other state NotConnected, without
    touching the link.

    Example:
        >>> session = DeviceSession()
        >>> session.events.subscribe("upload_progress", lambda pct: print(f"{pct:.0f}%"))
        >>> session.connect("/dev/ttyACM0")
        DeviceIdentity(name='busytag-A1B2C3', ...)
        >>> session.set_color(255, 0, 0)
        >>> with open("coffee.png", "rb") as f:
        ...     session.upload("coffee.png", f)
        >>> session.show_picture("coffee.png")
        >>> session.disconnect()
    """

    def __init__(self,
                 port: Optional[str] = None,
                 transport_factory: Callable[[], Transport] = SerialTransport,
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 chunk_timeout: float = DEFAULT_CHUNK_TIMEOUT,
                 discovery: Optional[DiscoveryManager] = None):
        """Initialize session.

        Args:
            port: Default port for connect()
            transport_factory: Creates a fresh Transport per connection
            command_timeout: Default per-command timeout in seconds
            chunk_size: Transfer chunk size in bytes
            chunk_timeout: Per-chunk acknowledgement timeout in seconds
            discovery: Discovery to keep off the port while this session
                owns it (claimed on connect, released on disconnect or fault)
        """
        self._port = port
        self._transport_factory = transport_factory
        self._command_timeout = command_timeout
        self._chunk_size = chunk_size
        self._chunk_timeout = chunk_timeout
        self._discovery = discovery

        self.events = EventHub()

        self._state = SessionState.DISCONNECTED
        self._lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)

        self._transport: Optional[Transport] = None
        self._dispatcher: Optional[CommandDispatcher] = None
        self._engine: Optional[TransferEngine] = None
        self._unsubscribers: List[Callable[[], None]] = []

        # Cached device state, cleared on disconnect
        self._identity: Optional[DeviceIdentity] = None
        self._files: List[FileEntry] = []
        self._storage = StorageSnapshot()
        self._current_image: Optional[str] = None

    # Properties

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state in (SessionState.CONNECTED, SessionState.BUSY)

    @property
    def port(self) -> Optional[str]:
        return self._port

    @property
    def identity(self) -> Optional[DeviceIdentity]:
        return self._identity

    @property
    def files(self) -> List[FileEntry]:
        """File list from the last successful list_files() (may be stale)."""
        with self._lock:
            return list(self._files)

    @property
    def storage(self) -> StorageSnapshot:
        with self._lock:
            return self._storage

    @property
    def free_storage(self) -> Optional[int]:
        return self.storage.free_bytes

    @property
    def total_storage(self) -> Optional[int]:
        return self.storage.total_bytes

    @property
    def current_image_name(self) -> Optional[str]:
        return self._current_image

    @property
    def active_transfer(self) -> Optional[TransferJob]:
        engine = self._engine
        return engine.active_job if engine is not None else None

    # Lifecycle

    def connect(self, port: Optional[str] = None) -> DeviceIdentity:
        """Open the link and read the device identity.

        Args:
            port: Port to open (default: the port given at construction or
                used last)

        Returns:
            The identity reported by the badge

        Raises:
            PortUnavailable: Port missing or access denied
            CommandTimeout: Handshake not answered in time
            LinkError: Link failed during the handshake
            SessionBusy: Session is transferring or still settling
        """
        with self._lock:
            if self._state is SessionState.CONNECTED:
                logger.warning(f"Already connected to {self._port}")
                return self._identity
            if self._state is not SessionState.DISCONNECTED:
                raise SessionBusy(f"Cannot connect while {self._state.value}")
            port = port or self._port
            if not port:
                raise ValueError("No port given")
            self._port = port
            self._set_state(SessionState.CONNECTING)

        if self._discovery is not None:
            self._discovery.claim(port)
        transport = self._transport_factory()
        dispatcher = CommandDispatcher(transport, default_timeout=self._command_timeout)
        unsubscribers: List[Callable[[], None]] = []
        try:
            transport.open(port)
            unsubscribers.append(dispatcher.subscribe_unsolicited(self._on_unsolicited))
            unsubscribers.append(
                dispatcher.subscribe_link_lost(lambda error: self._fault(error, dispatcher))
            )
            dispatcher.start()
            identity = self._handshake(dispatcher)
            current_image = self._read_current_picture(dispatcher)
        except Exception as e:
            logger.error(f"Connecting to {port} failed: {e}")
            self._close_resources(None, dispatcher, transport, unsubscribers)
            self._release_port(port)
            with self._lock:
                if self._state is SessionState.CONNECTING:
                    self._set_state(SessionState.DISCONNECTED)
            raise

        with self._lock:
            attached = self._state is SessionState.CONNECTING
            if attached:
                self._transport = transport
                self._dispatcher = dispatcher
                self._engine = TransferEngine(
                    dispatcher,
                    self.events,
                    chunk_size=self._chunk_size,
                    chunk_timeout=self._chunk_timeout,
                )
                self._unsubscribers = unsubscribers
                self._identity = identity
                self._current_image = current_image
                self._set_state(SessionState.CONNECTED)

        if not attached:
            self._close_resources(None, dispatcher, transport, unsubscribers)
            self._release_port(port)
            raise NotConnected(f"Disconnected while connecting to {port}")

        logger.info(
            f"Connected to {identity.name} on {port} "
            f"(firmware {identity.firmware_version})"
        )
        self.events.emit(CONNECTION_CHANGED, True)
        return identity

    def disconnect(self) -> None:
        """Close the session. Safe to call in any state, any number of times.

        A running transfer is cancelled and ends with TransferAborted (or
        LinkError) on its own thread.
        """
        with self._lock:
            state = self._state
            if state in (SessionState.DISCONNECTED, SessionState.FAULTED):
                # FAULTED: the fault handler is already releasing the link
                return
            was_connected = state in (SessionState.CONNECTED, SessionState.BUSY)
            resources = self._detach()
            self._set_state(SessionState.DISCONNECTED)

        self._close_resources(*resources)
        logger.info(f"Disconnected from {self._port}")
        if was_connected:
            self._release_port(self._port)
            self.events.emit(CONNECTION_CHANGED, False)

    def __enter__(self) -> DeviceSession:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()

    # Display

    def set_color(self, red: int, green: int, blue: int, led_bits: int = ALL_LEDS) -> None:
        """Light the LEDs selected by led_bits in one colour."""
        line = commands.set_color(Color(red, green, blue), led_bits)
        self._execute(line)

    def set_solid_color(self, name: str, led_bits: int = ALL_LEDS) -> None:
        """Light the LEDs in a named colour ('red', 'white', 'off', ...)."""
        color = named_color(name)
        self.set_color(color.red, color.green, color.blue, led_bits)

    def set_pattern(self, steps: Sequence[PatternStep], loop: bool = True, priority: bool = False) -> None:
        self._execute(commands.set_pattern(steps, loop, priority))

    def get_brightness(self) -> int:
        return self._query(commands.GET_BRIGHTNESS, "+DB:", lambda payload: parse_int(payload, "brightness"))

    def set_brightness(self, level: int) -> None:
        """Set display brightness, 0-100."""
        self._execute(commands.set_brightness(level))

    def show_picture(self, name: str) -> None:
        self._execute(commands.show_picture(name))
        self._current_image = name

    def get_current_picture(self) -> Optional[str]:
        """Ask the badge which picture it shows (None if none)."""
        name = self._query(commands.GET_PICTURE, "+SP:", lambda payload: payload.strip() or None)
        self._current_image = name
        return name

    # Storage

    def list_files(self) -> List[FileEntry]:
        """Read the flash file list and refresh the cache."""
        files = self._execute(
            commands.GET_FILE_LIST,
            expect_lines("+FL:"),
            parse=lambda response: [parse_file_entry(p) for p in response.values("+FL:")],
        )
        with self._lock:
            self._files = files
        return list(files)

    def delete_file(self, name: str) -> None:
        self._execute(commands.delete_file(name))
        with self._lock:
            self._files = [entry for entry in self._files if entry.name != name]

    def get_free_storage(self) -> int:
        free = self._query(commands.GET_FREE_STORAGE, "+FSS:", lambda payload: parse_int(payload, "free storage"))
        with self._lock:
            self._storage = dataclasses.replace(self._storage, free_bytes=free)
        return free

    def get_total_storage(self) -> int:
        total = self._query(commands.GET_TOTAL_STORAGE, "+TSS:", lambda payload: parse_int(payload, "total storage"))
        with self._lock:
            self._storage = dataclasses.replace(self._storage, total_bytes=total)
        return total

    def get_storage(self) -> StorageSnapshot:
        """Refresh both storage figures (two independent queries)."""
        self.get_total_storage()
        self.get_free_storage()
        return self.storage

    def format_disk(self) -> None:
        """Erase every file on the badge."""
        self._execute(commands.FORMAT_DISK, timeout=FORMAT_TIMEOUT)
        with self._lock:
            self._files = []
            self._storage = StorageSnapshot()
        logger.info(f"Formatted storage on {self._port}")

    def activate_storage_scan(self) -> None:
        """Make the badge rescan its flash.

        A valid firmware image found by the scan gets flashed, reported
        through 'firmware_update_progress'. Uploading never triggers this.
        """
        with self._lock:
            self._require_connected()
            engine = self._engine
        try:
            engine.activate_storage_scan(self._command_timeout)
        except LinkError as e:
            self._fault(e)
            raise

    # Device

    def restart(self) -> None:
        """Reboot the badge.

        The session stays open; the link usually drops a moment later and
        the session then faults to DISCONNECTED like any other link loss.
        """
        self._execute(commands.RESTART)
        logger.info(f"Restart requested on {self._port}")

    # Transfers

    def upload(self,
               filename: str,
               stream: BinaryIO,
               size: Optional[int] = None,
               progress: Optional[ProgressCallback] = None) -> bool:
        """Upload a file to flash. See TransferEngine.upload()."""
        validate_filename(filename)
        if size is None:
            size = remaining_length(stream)
        engine = self._enter_busy()
        try:
            engine.upload(filename, stream, size, progress)
        except LinkError as e:
            self._fault(e)
            raise
        finally:
            self._leave_busy(engine)

        self._remember_upload(filename, size)
        return True

    def download(self,
                 filename: str,
                 sink: Optional[BinaryIO] = None,
                 progress: Optional[ProgressCallback] = None) -> BinaryIO:
        """Read a file from flash. See TransferEngine.download()."""
        validate_filename(filename)
        engine = self._enter_busy()
        try:
            return engine.download(filename, sink, progress)
        except LinkError as e:
            self._fault(e)
            raise
        finally:
            self._leave_busy(engine)

    def update_firmware(self,
                        filename: str,
                        stream: BinaryIO,
                        size: Optional[int] = None,
                        progress: Optional[ProgressCallback] = None) -> None:
        """Upload a firmware image and start flashing it.

        Flashing progress arrives as 'firmware_update_progress' events; the
        badge reboots when done, which ends this session.

        Raises:
            ValueError: filename is not a .bin image
        """
        if not filename.lower().endswith(FIRMWARE_SUFFIX):
            raise ValueError(f"Firmware images must be {FIRMWARE_SUFFIX} files, got {filename!r}")
        self.upload(filename, stream, size, progress)
        self.activate_storage_scan()
        logger.info(f"Firmware {filename} uploaded, flashing started on {self._port}")

    def cancel_transfer(self) -> bool:
        """Cancel the running transfer, if any.

        Returns:
            True if a transfer was running
        """
        engine = self._engine
        return engine.cancel() if engine is not None else False

    # Internal methods

    def _set_state(self, new_state: SessionState) -> None:
        """Change state along an allowed edge. Caller holds the lock."""
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid session transition {self._state.value} -> {new_state.value}"
            )
        logger.debug(f"Session state {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._state_changed.notify_all()

    def _require_connected(self) -> CommandDispatcher:
        with self._lock:
            if self._state is SessionState.BUSY:
                raise SessionBusy("A transfer is running")
            if self._state is not SessionState.CONNECTED:
                raise NotConnected(f"Session is {self._state.value}")
            return self._dispatcher

    def _execute(self,
                 line: str,
                 matcher: Optional[ResponseMatcher] = None,
                 timeout: Optional[float] = None,
                 parse: Optional[Callable[[Response], Any]] = None) -> Any:
        """Run one command; returns the Response, or parse(response) if given.

        A malformed payload raised from parse faults the session just like a
        link error.
        """
        dispatcher = self._require_connected()
        try:
            response = dispatcher.execute(line, matcher, timeout)
            return parse(response) if parse is not None else response
        except LinkError as e:
            self._fault(e)
            raise

    def _query(self, line: str, prefix: str, parse: Callable[[str], Any]) -> Any:
        """Run a single-value query and parse the payload after prefix."""
        return self._execute(line, expect_value(prefix), parse=lambda response: parse(response.value(prefix)))

    def _enter_busy(self) -> TransferEngine:
        with self._lock:
            self._require_connected()
            self._set_state(SessionState.BUSY)
            return self._engine

    def _leave_busy(self, engine: TransferEngine) -> None:
        with self._lock:
            if self._state is SessionState.BUSY and self._engine is engine:
                self._set_state(SessionState.CONNECTED)

    def _release_port(self, port: Optional[str]) -> None:
        if self._discovery is not None and port:
            self._discovery.release(port)

    def _remember_upload(self, filename: str, size: int) -> None:
        with self._lock:
            files = [entry for entry in self._files if entry.name != filename]
            files.append(FileEntry(name=filename, size=size))
            self._files = files

    def _handshake(self, dispatcher: CommandDispatcher) -> DeviceIdentity:
        def query(line: str, prefix: str) -> str:
            return dispatcher.execute(line, expect_value(prefix)).value(prefix).strip()

        return DeviceIdentity(
            name=query(commands.GET_DEVICE_NAME, "+DN:"),
            manufacturer=query(commands.GET_MANUFACTURER, "+MN:"),
            device_id=query(commands.GET_DEVICE_ID, "+ID:"),
            firmware_version=query(commands.GET_FIRMWARE_VERSION, "+FV:"),
        )

    def _read_current_picture(self, dispatcher: CommandDispatcher) -> Optional[str]:
        try:
            response = dispatcher.execute(commands.GET_PICTURE, expect_value("+SP:"))
        except (CommandTimeout, CommandRejected) as e:
            logger.debug(f"Current picture unknown: {e}")
            return None
        return response.value("+SP:").strip() or None

    def _on_unsolicited(self, line: str) -> None:
        event = parse_event(line)
        if event.kind is EventKind.NOW_DISPLAYING:
            self._current_image = event.value or None
            self.events.emit(NOW_DISPLAYING, event.value)
        elif event.kind is EventKind.FIRMWARE_PROGRESS:
            self.events.emit(FIRMWARE_UPDATE_PROGRESS, event.value)
        elif event.kind is EventKind.WRITING_IN_STORAGE:
            self.events.emit(WRITING_IN_STORAGE, event.value)
        else:
            self.events.emit(UNSOLICITED, line)

    def _fault(self, error: Exception, dispatcher: Optional[CommandDispatcher] = None) -> None:
        """Release a session whose link failed.

        Called from the failing operation's thread, and from the dispatcher
        thread via the link-lost subscription (dispatcher given). Whichever
        arrives first does the cleanup; an operation thread arriving second
        waits for it so the session is DISCONNECTED when the error surfaces.
        """
        with self._lock:
            if dispatcher is not None and dispatcher is not self._dispatcher:
                return
            if self._state not in (SessionState.CONNECTED, SessionState.BUSY):
                if dispatcher is None:
                    self._state_changed.wait_for(
                        lambda: self._state is not SessionState.FAULTED,
                        timeout=FAULT_CLEANUP_TIMEOUT,
                    )
                return
            logger.error(f"Session on {self._port} faulted: {error}")
            self._set_state(SessionState.FAULTED)
            resources = self._detach()

        self._close_resources(*resources)
        self._release_port(self._port)
        with self._lock:
            self._set_state(SessionState.DISCONNECTED)
        self.events.emit(CONNECTION_CHANGED, False)

    def _detach(self):
        """Take ownership of the live resources and clear caches. Caller holds the lock."""
        resources = (self._engine, self._dispatcher, self._transport, self._unsubscribers)
        self._engine = None
        self._dispatcher = None
        self._transport = None
        self._unsubscribers = []
        self._identity = None
        self._files = []
        self._storage = StorageSnapshot()
        self._current_image = None
        return resources

    @staticmethod
    def _close_resources(engine: Optional[TransferEngine],
                         dispatcher: Optional[CommandDispatcher],
                         transport: Optional[Transport],
                         unsubscribers: List[Callable[[], None]]) -> None:
        if engine is not None:
            engine.cancel()
        for unsubscribe in unsubscribers:
            unsubscribe()
        if dispatcher is not None:
            dispatcher.close()
        if transport is not None:
            transport.close()
