"""Request/response channel over a Transport.

The badge has one serial channel and cannot interleave replies, so exactly
one command is in flight at a time. Callers from any thread enqueue
PendingCommands; a single worker thread serves them in arrival order,
sends the request line and collects reply lines until the command's matcher
sees a terminal line or its timeout elapses.

Lines that no pending command claims (e.g. '+evn:SP,<file>' pushes) are
routed to unsolicited-line subscribers instead of being dropped.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from typing import Callable, List, Optional

from ..errors import BadgeError, CommandRejected, CommandTimeout, LinkError, ProtocolViolation
from ..transport.base import Transport
from .parser import Response, ResponseMatcher, Verdict, error_reason, expect_ok

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 2.0  # seconds
IDLE_POLL_INTERVAL = 0.05  # seconds


class PendingCommand:
    """One request waiting for (or receiving) its response.

    Attributes:
        line: Request line to send
        matcher: Classifies reply lines
        timeout: Deadline in seconds, measured from when the request is sent
        future: Completion slot resolved by the worker
    """

    def __init__(self, line: str, matcher: ResponseMatcher, timeout: float):
        self.line = line
        self.matcher = matcher
        self.timeout = timeout
        self.future: Future = Future()

    @property
    def name(self) -> str:
        """Command mnemonic without arguments, for logs and errors."""
        return self.line.split("=", 1)[0]

    def __repr__(self) -> str:
        return f"PendingCommand({self.line[:40]!r}, timeout={self.timeout})"


class CommandDispatcher:
    """Serializes commands over one Transport.

    Responsibilities:
    - Strict FIFO, one-at-a-time command execution
    - Per-command timeouts (no implicit retry; the channel stays usable)
    - Routing unclaimed lines to unsolicited subscribers
    - Failing every outstanding command when the link drops

    Example:
        >>> dispatcher = CommandDispatcher(transport)
        >>> dispatcher.start()
        >>> dispatcher.execute("AT+GDN", expect_value("+DN:")).value("+DN:")
        'busytag-A1B2C3'
        >>> dispatcher.close()
    """

    def __init__(self,
                 transport: Transport,
                 default_timeout: float = DEFAULT_COMMAND_TIMEOUT,
                 poll_interval: float = IDLE_POLL_INTERVAL):
        self._transport = transport
        self._default_timeout = default_timeout
        self._poll_interval = poll_interval

        self._queue: queue.Queue[Optional[PendingCommand]] = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._running = False
        self._broken: Optional[Exception] = None
        self._state_lock = threading.Lock()

        self._unsolicited_callbacks: List[Callable[[str], None]] = []
        self._link_lost_callbacks: List[Callable[[Exception], None]] = []
        self._callback_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running and self._broken is None

    def start(self) -> None:
        """Start the worker thread."""
        with self._state_lock:
            if self._running:
                return
            self._running = True
            self._broken = None
            self._worker = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name="BadgeDispatcher"
            )
            self._worker.start()

    def close(self) -> None:
        """Stop the worker; queued commands fail with LinkError.

        The in-flight command (if any) completes or times out first.
        Does not close the transport.
        """
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            worker = self._worker
            self._worker = None

        self._queue.put(None)
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=self._default_timeout + 1.0)
        self._fail_queued(LinkError("Dispatcher closed"))

    def execute(self,
                line: str,
                matcher: Optional[ResponseMatcher] = None,
                timeout: Optional[float] = None) -> Response:
        """Send one request and wait for its response.

        Args:
            line: Request line
            matcher: Response matcher (default: bare OK)
            timeout: Seconds to wait for the terminal line

        Returns:
            Response with the claimed lines

        Raises:
            CommandTimeout: No terminal line before the deadline
            CommandRejected: Device answered ERROR
            ProtocolViolation: Reply had an unexpected shape
            LinkError: Link down or dispatcher closed
        """
        if self._worker is threading.current_thread():
            raise RuntimeError("execute() called from the dispatcher thread")

        command = PendingCommand(
            line,
            matcher if matcher is not None else expect_ok(),
            timeout if timeout is not None else self._default_timeout,
        )
        with self._state_lock:
            if self._broken is not None:
                raise LinkError(f"Link is down: {self._broken}")
            if not self._running:
                raise LinkError("Dispatcher is not running")
            self._queue.put(command)
        return command.future.result()

    def subscribe_unsolicited(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Receive every line no pending command claims."""
        return self._subscribe(self._unsolicited_callbacks, callback)

    def subscribe_link_lost(self, callback: Callable[[Exception], None]) -> Callable[[], None]:
        """Be told (once) when the transport fails."""
        return self._subscribe(self._link_lost_callbacks, callback)

    # Internal methods

    def _subscribe(self, callbacks: list, callback: Callable) -> Callable[[], None]:
        with self._callback_lock:
            callbacks.append(callback)

        def unsubscribe():
            with self._callback_lock:
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def _worker_loop(self) -> None:
        logger.debug("Dispatcher thread started")
        while self._running:
            try:
                command = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if not self._drain_unclaimed():
                    break
                continue

            if command is None:  # Sentinel
                break

            if not command.future.set_running_or_notify_cancel():
                continue
            if not self._run(command):
                break
        logger.debug("Dispatcher thread exiting")

    def _run(self, command: PendingCommand) -> bool:
        """Execute one command. Returns False if the link died."""
        try:
            if not self._drain_unclaimed():
                command.future.set_exception(LinkError(f"Link is down: {self._broken}"))
                return False
            self._transport.send_line(command.line)
            response = self._collect(command)
        except ProtocolViolation as e:
            logger.warning(f"{command.name}: {e}")
            command.future.set_exception(e)
        except LinkError as e:
            command.future.set_exception(e)
            self._on_link_error(e)
            return False
        except BadgeError as e:
            logger.debug(f"{command.name} failed: {e}")
            command.future.set_exception(e)
        except Exception as e:
            logger.error(f"Unexpected error running {command.name}: {e}")
            command.future.set_exception(e)
        else:
            command.future.set_result(response)
        return True

    def _collect(self, command: PendingCommand) -> Response:
        """Read lines until the matcher reports a terminal line."""
        response = Response()
        deadline = time.monotonic() + command.timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CommandTimeout(f"{command.name} timed out after {command.timeout:.2f}s")
            try:
                line = self._transport.receive_line(remaining)
            except CommandTimeout:
                raise CommandTimeout(
                    f"{command.name} timed out after {command.timeout:.2f}s"
                ) from None

            verdict = command.matcher(line)
            if verdict is Verdict.IGNORE:
                self._route_unsolicited(line)
            elif verdict is Verdict.PART:
                response.lines.append(line)
            elif verdict is Verdict.DONE:
                response.lines.append(line)
                return response
            elif verdict is Verdict.REJECT:
                reason = error_reason(line)
                raise CommandRejected(
                    f"{command.name} rejected by device" + (f": {reason}" if reason else ""),
                    reason=reason,
                )
            else:
                raise ProtocolViolation(f"{command.name}: unexpected reply {line!r}")

    def _drain_unclaimed(self) -> bool:
        """Route lines that arrived while idle. Returns False if the link died."""
        while True:
            try:
                line = self._transport.receive_line(0)
            except CommandTimeout:
                return True
            except LinkError as e:
                self._on_link_error(e)
                return False
            self._route_unsolicited(line)

    def _route_unsolicited(self, line: str) -> None:
        if not line.strip():
            return
        with self._callback_lock:
            callbacks = list(self._unsolicited_callbacks)
        if not callbacks:
            logger.debug(f"Unclaimed line dropped: {line!r}")
        for callback in callbacks:
            try:
                callback(line)
            except Exception as e:
                logger.error(f"Error in unsolicited callback: {e}")

    def _on_link_error(self, error: Exception) -> None:
        """Fail everything outstanding, then tell subscribers."""
        if self._broken is not None:
            return
        logger.error(f"Link error: {error}")
        with self._state_lock:
            self._broken = error
            self._running = False
        self._fail_queued(LinkError(f"Link is down: {error}"))

        with self._callback_lock:
            callbacks = list(self._link_lost_callbacks)
        for callback in callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error in link-lost callback: {e}")

    def _fail_queued(self, error: Exception) -> None:
        while True:
            try:
                command = self._queue.get_nowait()
            except queue.Empty:
                break
            if command is not None and command.future.set_running_or_notify_cancel():
                command.future.set_exception(error)
