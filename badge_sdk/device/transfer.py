"""Chunked file transfer over the command dispatcher.

Upload:   AT+UF=<name>,<size> -> +UF:READY
          AT+UD=<len>,<b64>   -> +UD:<bytes received>   (once per chunk)
          AT+UE               -> +UE:OK
Download: AT+GF=<name>        -> +GF:<size>
          AT+RD=<max>         -> +RD:<len>,<b64>        (until +RD:0,)
Abort:    AT+UA               -> OK

Every chunk is acknowledged before the next one is sent; the badge's receive
buffer is small compared to typical images. Timeouts apply per command and a
timed-out chunk ends the transfer (no retry: a blind resend could duplicate
bytes on the device).
"""
from __future__ import annotations

import io
import logging
import threading
import time
from typing import BinaryIO, Callable, Optional

from ..errors import (
    BadgeError,
    CommandRejected,
    LinkError,
    ProtocolViolation,
    TransferAborted,
    TransferRejected,
)
from ..events import DOWNLOAD_PROGRESS, UPLOAD_FINISHED, UPLOAD_PROGRESS, EventHub
from ..models import TransferDirection, TransferJob, validate_filename
from ..protocol import commands
from ..protocol.dispatcher import CommandDispatcher
from ..protocol.parser import expect_ok, expect_value, parse_chunk, parse_int

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4096  # bytes
DEFAULT_CHUNK_TIMEOUT = 5.0  # seconds
DEFAULT_BEGIN_TIMEOUT = 5.0  # seconds
DEFAULT_FINISH_TIMEOUT = 10.0  # seconds, device flushes to flash
ABORT_TIMEOUT = 1.0  # seconds
MIN_ABORT_TIMEOUT = 0.1  # seconds

ProgressCallback = Callable[[float], None]


class TransferEngine:
    """Moves file bytes between a stream and the badge flash.

    Progress is reported as a percentage after every acknowledged chunk,
    both to the optional per-call callback and to the EventHub. Observers run
    on the transferring thread and should return quickly.

    Only one transfer runs at a time; the owning session enforces that with
    its BUSY state.
    """

    def __init__(self,
                 dispatcher: CommandDispatcher,
                 events: Optional[EventHub] = None,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 chunk_timeout: float = DEFAULT_CHUNK_TIMEOUT,
                 begin_timeout: float = DEFAULT_BEGIN_TIMEOUT,
                 finish_timeout: float = DEFAULT_FINISH_TIMEOUT):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be > 0, got {chunk_size}")
        self._dispatcher = dispatcher
        self.events = events if events is not None else EventHub()
        self.chunk_size = chunk_size
        self.chunk_timeout = chunk_timeout
        self.begin_timeout = begin_timeout
        self.finish_timeout = finish_timeout

        self._job: Optional[TransferJob] = None
        self._job_lock = threading.Lock()

    @property
    def active_job(self) -> Optional[TransferJob]:
        with self._job_lock:
            return self._job

    def cancel(self) -> bool:
        """Ask the running transfer to stop before its next chunk.

        The chunk in flight is still awaited, then the abort command gets
        whatever is left of chunk_timeout (at least MIN_ABORT_TIMEOUT), so
        the transfer ends within about one chunk timeout of this call.

        Returns:
            True if a transfer was running
        """
        with self._job_lock:
            job = self._job
        if job is None:
            return False
        logger.info(f"Cancelling {job}")
        job.cancel()
        return True

    def upload(self,
               filename: str,
               stream: BinaryIO,
               size: Optional[int] = None,
               progress: Optional[ProgressCallback] = None) -> bool:
        """Upload size bytes from stream as filename.

        If size is None the remaining length of a seekable stream is used.

        Emits one progress notification per acknowledged chunk, then
        'upload_finished' with True, or with False on any failure.

        Raises:
            ValueError: Bad file name or size (nothing is sent)
            TransferRejected: Device refused, or stream ended early
            TransferAborted: cancel() was called
            CommandTimeout: A stage was not acknowledged in time
            LinkError: Link failed (includes ProtocolViolation)
            OSError: Reading the stream failed (the device transfer is
                aborted first)
        """
        validate_filename(filename)
        if size is None:
            size = remaining_length(stream)
        if size < 0:
            raise ValueError(f"Upload size must be >= 0, got {size}")

        job = self._begin_job(TransferDirection.UPLOAD, filename, size)
        try:
            self._upload(job, stream, progress)
        except Exception as e:
            logger.warning(f"Upload of {filename} failed: {e}")
            self.events.emit(UPLOAD_FINISHED, False)
            raise
        finally:
            self._end_job()

        logger.info(f"Uploaded {filename} ({size} bytes)")
        self.events.emit(UPLOAD_FINISHED, True)
        return True

    def download(self,
                 filename: str,
                 sink: Optional[BinaryIO] = None,
                 progress: Optional[ProgressCallback] = None) -> BinaryIO:
        """Download filename into sink (a new BytesIO if omitted).

        Returns:
            The sink, positioned after the last written byte

        Raises:
            TransferRejected: Device refused (e.g. no such file)
            TransferAborted: cancel() was called
            CommandTimeout: A segment did not arrive in time
            LinkError: Link failed (includes ProtocolViolation)
        """
        validate_filename(filename)
        if sink is None:
            sink = io.BytesIO()

        try:
            response = self._dispatcher.execute(
                commands.download_begin(filename), expect_value("+GF:"), self.begin_timeout
            )
        except CommandRejected as e:
            raise TransferRejected(f"Download of {filename} refused: {e}") from e
        size = parse_int(response.value("+GF:"), "file size")

        job = self._begin_job(TransferDirection.DOWNLOAD, filename, size)
        try:
            self._download(job, sink, progress)
        except Exception as e:
            logger.warning(f"Download of {filename} failed: {e}")
            raise
        finally:
            self._end_job()

        logger.info(f"Downloaded {filename} ({size} bytes)")
        return sink

    def activate_storage_scan(self, timeout: Optional[float] = None) -> None:
        """Make the badge rescan its flash.

        If the scan finds a valid firmware image the badge starts flashing it
        and reports 'firmware_update_progress'. Uploading a .bin never does
        this by itself.
        """
        self._dispatcher.execute(commands.ACTIVATE_STORAGE_SCAN, expect_ok(), timeout)

    # Internal methods

    def _begin_job(self, direction: TransferDirection, filename: str, size: int) -> TransferJob:
        with self._job_lock:
            if self._job is not None:
                raise TransferRejected(f"Another transfer is running: {self._job}")
            self._job = TransferJob(direction, filename, size, self.chunk_size)
            return self._job

    def _end_job(self) -> None:
        with self._job_lock:
            self._job = None

    def _upload(self, job: TransferJob, stream: BinaryIO, progress: Optional[ProgressCallback]) -> None:
        try:
            response = self._dispatcher.execute(
                commands.upload_begin(job.filename, job.total_size),
                expect_value("+UF:"),
                self.begin_timeout,
            )
        except CommandRejected as e:
            raise TransferRejected(f"Upload of {job.filename} refused: {e}") from e
        if response.value("+UF:").strip() != "READY":
            raise ProtocolViolation(f"Unexpected upload handshake: {response.lines}")

        try:
            if job.total_size == 0:
                self._report(job, UPLOAD_PROGRESS, progress)

            while not job.is_complete:
                self._check_cancelled(job)
                wanted = min(job.chunk_size, job.total_size - job.bytes_completed)
                chunk = stream.read(wanted)
                if not chunk:
                    raise TransferRejected(
                        f"Source stream ended after {job.bytes_completed} of {job.total_size} bytes"
                    )
                self._send_chunk(job, chunk)
                self._report(job, UPLOAD_PROGRESS, progress)

            self._check_cancelled(job)
            response = self._dispatcher.execute(
                commands.UPLOAD_END, expect_value("+UE:"), self.finish_timeout
            )
            if response.value("+UE:").strip() != "OK":
                raise TransferRejected(f"Device did not confirm {job.filename}: {response.lines}")
        except CommandRejected as e:
            self._abort(job)
            raise TransferRejected(f"Upload of {job.filename} rejected: {e}") from e
        except LinkError:
            raise
        except Exception:
            self._abort(job)
            raise

    def _send_chunk(self, job: TransferJob, chunk: bytes) -> None:
        response = self._dispatcher.execute(
            commands.upload_chunk(chunk), expect_value("+UD:"), self.chunk_timeout
        )
        acked = parse_int(response.value("+UD:"), "acknowledged byte count")
        job.advance(len(chunk))
        if acked != job.bytes_completed:
            raise ProtocolViolation(
                f"Device acknowledged {acked} bytes, sent {job.bytes_completed}"
            )

    def _download(self, job: TransferJob, sink: BinaryIO, progress: Optional[ProgressCallback]) -> None:
        try:
            while True:
                self._check_cancelled(job)
                response = self._dispatcher.execute(
                    commands.download_read(job.chunk_size), expect_value("+RD:"), self.chunk_timeout
                )
                data = parse_chunk(response.value("+RD:"))
                if not data:
                    break
                job.advance(len(data))
                sink.write(data)
                self._report(job, DOWNLOAD_PROGRESS, progress)
        except CommandRejected as e:
            self._abort(job)
            raise TransferRejected(f"Download of {job.filename} rejected: {e}") from e
        except LinkError:
            raise
        except Exception:
            self._abort(job)
            raise

        if not job.is_complete:
            raise ProtocolViolation(
                f"Download of {job.filename} ended at {job.bytes_completed} of {job.total_size} bytes"
            )
        if job.total_size == 0:
            self._report(job, DOWNLOAD_PROGRESS, progress)

    def _check_cancelled(self, job: TransferJob) -> None:
        if job.cancelled:
            raise TransferAborted(f"{job.direction.value.capitalize()} of {job.filename} cancelled")

    def _report(self, job: TransferJob, event: str, progress: Optional[ProgressCallback]) -> None:
        percent = job.percent
        if progress is not None:
            try:
                progress(percent)
            except Exception as e:
                logger.error(f"Error in progress callback: {e}")
        self.events.emit(event, percent)

    def _abort(self, job: TransferJob) -> None:
        """Best-effort AT+UA; failure is logged, never raised."""
        timeout = ABORT_TIMEOUT
        if job.cancelled_at is not None:
            # Finish within one chunk timeout of the cancel request
            remaining = job.cancelled_at + self.chunk_timeout - time.monotonic()
            timeout = min(ABORT_TIMEOUT, max(remaining, MIN_ABORT_TIMEOUT))
        try:
            self._dispatcher.execute(commands.TRANSFER_ABORT, expect_ok(), timeout)
            logger.info(f"Aborted {job}")
        except BadgeError as e:
            logger.warning(f"Abort of {job.filename} not confirmed: {e}")


def remaining_length(stream: BinaryIO) -> int:
    """Bytes left in a seekable stream."""
    try:
        position = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(position)
    except (AttributeError, OSError, ValueError) as e:
        raise ValueError(f"Size unknown and stream is not seekable: {e}") from e
    return end - position
