"""Unit tests for TransferEngine."""
import base64
import io
import os
import unittest
from unittest.mock import Mock

from badge_sdk.errors import (
    CommandTimeout,
    ProtocolViolation,
    TransferAborted,
    TransferRejected,
)
from badge_sdk.events import DOWNLOAD_PROGRESS, UPLOAD_FINISHED, UPLOAD_PROGRESS
from badge_sdk.device.transfer import TransferEngine
from badge_sdk.protocol.dispatcher import CommandDispatcher

from fakes import FakeStorage, FakeTransport


class FailingStream(io.BytesIO):
    """BytesIO whose reads fail after good_reads successful ones."""

    def __init__(self, data, good_reads):
        super().__init__(data)
        self.good_reads = good_reads

    def read(self, size=-1):
        if self.good_reads <= 0:
            raise OSError("source file went away")
        self.good_reads -= 1
        return super().read(size)


class TransferTestCase(unittest.TestCase):

    def setUp(self):
        self.storage = FakeStorage()
        self.transport = FakeTransport(handler=self.storage)
        self.transport.open("/dev/fake")
        self.dispatcher = CommandDispatcher(self.transport, default_timeout=0.5, poll_interval=0.01)
        self.dispatcher.start()
        self.engine = TransferEngine(self.dispatcher, chunk_timeout=0.5, begin_timeout=0.5,
                                     finish_timeout=0.5)

        self.progress = []
        self.finished = []
        self.engine.events.subscribe(UPLOAD_PROGRESS, self.progress.append)
        self.engine.events.subscribe(DOWNLOAD_PROGRESS, self.progress.append)
        self.engine.events.subscribe(UPLOAD_FINISHED, self.finished.append)

    def tearDown(self):
        self.dispatcher.close()
        self.transport.close()


class TestUpload(TransferTestCase):

    def test_upload_progress(self):
        data = os.urandom(100000)

        result = self.engine.upload("photo.png", io.BytesIO(data), len(data))

        self.assertTrue(result)
        self.assertEqual(self.storage.files["photo.png"], data)
        self.assertEqual(self.storage.chunk_count, 25)
        self.assertEqual(len(self.progress), 25)
        self.assertEqual(self.progress, sorted(self.progress))
        self.assertEqual(self.progress[-1], 100.0)
        self.assertEqual(self.finished, [True])
        self.assertIsNone(self.engine.active_job)

    def test_progress_callback(self):
        callback = Mock()
        data = b"x" * 5000

        self.engine.upload("a.bin", io.BytesIO(data), len(data), progress=callback)

        self.assertEqual(callback.call_count, 2)
        callback.assert_called_with(100.0)

    def test_size_from_stream(self):
        stream = io.BytesIO(b"0123456789")
        stream.seek(2)

        self.engine.upload("a.bin", stream)

        self.assertEqual(self.storage.files["a.bin"], b"23456789")

    def test_empty_upload(self):
        self.engine.upload("empty.txt", io.BytesIO(b""), 0)

        self.assertEqual(self.storage.files["empty.txt"], b"")
        self.assertEqual(self.progress, [100.0])
        self.assertEqual(self.finished, [True])

    def test_invalid_name_sends_nothing(self):
        with self.assertRaises(ValueError):
            self.engine.upload("n" * 41, io.BytesIO(b"abc"), 3)
        with self.assertRaises(ValueError):
            self.engine.upload("a.bin", io.BytesIO(b"abc"), -1)
        self.assertEqual(self.transport.sent, [])

    def test_rejected_for_space(self):
        self.storage.free_bytes = 10

        with self.assertRaises(TransferRejected):
            self.engine.upload("big.png", io.BytesIO(b"x" * 100), 100)

        self.assertNotIn("AT+UD", self.transport.sent_commands())
        self.assertEqual(self.finished, [False])

    def test_short_stream(self):
        with self.assertRaises(TransferRejected):
            self.engine.upload("a.bin", io.BytesIO(b"x" * 50), 100)
        self.assertTrue(self.storage.aborted)
        self.assertEqual(self.finished, [False])

    def test_cancel_stops_before_next_chunk(self):
        data = b"x" * 20000

        def cancel_after_first(percent):
            self.engine.cancel()

        with self.assertRaises(TransferAborted):
            self.engine.upload("a.bin", io.BytesIO(data), len(data), progress=cancel_after_first)

        self.assertEqual(self.storage.chunk_count, 1)
        self.assertTrue(self.storage.aborted)
        self.assertNotIn("AT+UE", self.transport.sent_commands())
        self.assertEqual(self.finished, [False])

    def test_stream_error_aborts_device_side(self):
        stream = FailingStream(b"x" * 30, good_reads=1)
        self.engine.chunk_size = 10

        with self.assertRaises(OSError):
            self.engine.upload("a.bin", stream, 30)

        self.assertEqual(self.storage.chunk_count, 1)
        self.assertTrue(self.storage.aborted)
        self.assertNotIn("AT+UE", self.transport.sent_commands())
        self.assertEqual(self.finished, [False])
        self.assertIsNone(self.engine.active_job)

    def test_sink_error_aborts_download(self):
        self.storage.files["a.bin"] = b"hello"
        sink = Mock()
        sink.write.side_effect = OSError("disk full")

        with self.assertRaises(OSError):
            self.engine.download("a.bin", sink)
        self.assertTrue(self.storage.aborted)

    def test_cancel_without_transfer(self):
        self.assertFalse(self.engine.cancel())

    def test_activate_storage_scan(self):
        self.transport.replies["AT+AFSS"] = ["OK"]
        self.engine.activate_storage_scan()
        self.assertEqual(self.transport.sent, ["AT+AFSS"])

    def test_ack_mismatch(self):
        self.transport.handler = None
        self.transport.replies.update({
            "AT+UF": ["+UF:READY", "OK"],
            "AT+UD": ["+UD:1", "OK"],
        })

        with self.assertRaises(ProtocolViolation):
            self.engine.upload("a.bin", io.BytesIO(b"abc"), 3)
        self.assertNotIn("AT+UA", self.transport.sent_commands())

    def test_chunk_timeout_is_terminal(self):
        self.transport.handler = None
        self.transport.replies.update({
            "AT+UF": ["+UF:READY", "OK"],
            "AT+UA": ["OK"],
        })
        self.engine.chunk_timeout = 0.1

        with self.assertRaises(CommandTimeout):
            self.engine.upload("a.bin", io.BytesIO(b"x" * 10000), 10000)

        self.assertEqual(self.transport.sent_commands().count("AT+UD"), 1)
        self.assertIn("AT+UA", self.transport.sent_commands())


class TestDownload(TransferTestCase):

    def test_download(self):
        data = os.urandom(10000)
        self.storage.files["a.bin"] = data

        sink = self.engine.download("a.bin")

        self.assertEqual(sink.getvalue(), data)
        self.assertEqual(len(self.progress), 3)
        self.assertEqual(self.progress[-1], 100.0)

    def test_download_into_sink(self):
        self.storage.files["a.bin"] = b"hello"
        sink = io.BytesIO()

        self.assertIs(self.engine.download("a.bin", sink), sink)
        self.assertEqual(sink.getvalue(), b"hello")

    def test_small_device_segments(self):
        self.storage.files["a.bin"] = b"x" * 1000
        self.storage.segment_size = 300

        sink = self.engine.download("a.bin")

        self.assertEqual(len(sink.getvalue()), 1000)
        self.assertEqual(len(self.progress), 4)

    def test_missing_file(self):
        with self.assertRaises(TransferRejected):
            self.engine.download("missing.png")

    def test_empty_file(self):
        self.storage.files["empty.txt"] = b""
        self.assertEqual(self.engine.download("empty.txt").getvalue(), b"")
        self.assertEqual(self.progress, [100.0])

    def test_ends_early(self):
        self.transport.handler = None
        self.transport.replies.update({
            "AT+GF": ["+GF:100", "OK"],
            "AT+RD": ["+RD:0,", "OK"],
        })
        with self.assertRaises(ProtocolViolation):
            self.engine.download("a.bin")

    def test_overrun(self):
        payload = base64.b64encode(b"abc").decode()
        self.transport.handler = None
        self.transport.replies.update({
            "AT+GF": ["+GF:2", "OK"],
            "AT+RD": [f"+RD:3,{payload}", "OK"],
        })
        with self.assertRaises(ProtocolViolation):
            self.engine.download("a.bin")


if __name__ == '__main__':
    unittest.main()
