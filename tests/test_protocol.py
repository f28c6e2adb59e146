"""Unit tests for command building and response parsing."""
import base64
import unittest

from badge_sdk.errors import ProtocolViolation
from badge_sdk.models import Color, PatternStep
from badge_sdk.protocol import commands
from badge_sdk.protocol.parser import (
    EventKind,
    Response,
    Verdict,
    error_reason,
    expect_lines,
    expect_ok,
    expect_value,
    parse_chunk,
    parse_event,
    parse_file_entry,
    parse_int,
)


class TestCommands(unittest.TestCase):

    def test_set_color(self):
        self.assertEqual(commands.set_color(Color(255, 0, 0), 127), "AT+SC=127,FF0000")
        with self.assertRaises(ValueError):
            commands.set_color(Color(255, 0, 0), 0)

    def test_set_pattern(self):
        steps = [
            PatternStep(Color(255, 0, 0), 100),
            PatternStep(Color(0, 0, 255), 250, transition=True, led_bits=3),
        ]
        self.assertEqual(
            commands.set_pattern(steps, loop=True, priority=False),
            "AT+CP=1,0,2;127,FF0000,100,0;3,0000FF,250,1",
        )
        with self.assertRaises(ValueError):
            commands.set_pattern([], loop=True, priority=False)

    def test_set_brightness(self):
        self.assertEqual(commands.set_brightness(75), "AT+SDB=75")
        for bad in (-1, 101, 50.5):
            with self.assertRaises(ValueError):
                commands.set_brightness(bad)

    def test_file_commands_validate_names(self):
        self.assertEqual(commands.show_picture("coffee.png"), "AT+SP=coffee.png")
        self.assertEqual(commands.delete_file("coffee.png"), "AT+DF=coffee.png")
        self.assertEqual(commands.upload_begin("coffee.png", 1234), "AT+UF=coffee.png,1234")
        with self.assertRaises(ValueError):
            commands.show_picture("x" * 41)

    def test_upload_chunk(self):
        line = commands.upload_chunk(b"\x00\x01\xff")
        self.assertEqual(line, "AT+UD=3," + base64.b64encode(b"\x00\x01\xff").decode())


class TestMatchers(unittest.TestCase):

    def test_expect_ok(self):
        matcher = expect_ok()
        self.assertIs(matcher("OK"), Verdict.DONE)
        self.assertIs(matcher("ERROR"), Verdict.REJECT)
        self.assertIs(matcher("ERROR:busy"), Verdict.REJECT)

    def test_events_are_ignored(self):
        matcher = expect_value("+DN:")
        self.assertIs(matcher("+evn:SP,coffee.png"), Verdict.IGNORE)
        self.assertIs(matcher(""), Verdict.IGNORE)

    def test_expect_value(self):
        matcher = expect_value("+DN:")
        self.assertIs(matcher("+DN:busytag"), Verdict.PART)
        self.assertIs(matcher("OK"), Verdict.DONE)

    def test_missing_value_is_violation(self):
        self.assertIs(expect_value("+DN:")("OK"), Verdict.VIOLATION)

    def test_foreign_value_is_violation(self):
        self.assertIs(expect_value("+DN:")("+FSS:1024"), Verdict.VIOLATION)

    def test_duplicate_value_is_violation(self):
        matcher = expect_value("+DN:")
        matcher("+DN:a")
        self.assertIs(matcher("+DN:b"), Verdict.VIOLATION)

    def test_expect_lines(self):
        matcher = expect_lines("+FL:")
        self.assertIs(matcher("+FL:a.png,10"), Verdict.PART)
        self.assertIs(matcher("+FL:b.png,20"), Verdict.PART)
        self.assertIs(matcher("OK"), Verdict.DONE)
        self.assertIs(expect_lines("+FL:")("OK"), Verdict.DONE)

    def test_error_reason(self):
        self.assertEqual(error_reason("ERROR:no space"), "no space")
        self.assertIsNone(error_reason("ERROR"))


class TestResponse(unittest.TestCase):

    def test_value(self):
        response = Response(["+FL:a.png,10", "+FL:b.png,20", "OK"])
        self.assertEqual(response.values("+FL:"), ["a.png,10", "b.png,20"])
        self.assertEqual(response.terminal, "OK")
        with self.assertRaises(ProtocolViolation):
            response.value("+DN:")


class TestEvents(unittest.TestCase):

    def test_now_displaying(self):
        event = parse_event("+evn:SP,coffee.png")
        self.assertIs(event.kind, EventKind.NOW_DISPLAYING)
        self.assertEqual(event.value, "coffee.png")

    def test_firmware_progress(self):
        event = parse_event("+evn:FUP,42.5")
        self.assertIs(event.kind, EventKind.FIRMWARE_PROGRESS)
        self.assertEqual(event.value, 42.5)

    def test_writing_in_storage(self):
        self.assertIs(parse_event("+evn:WIS,1").value, True)
        self.assertIs(parse_event("+evn:WIS,0").value, False)

    def test_unknown(self):
        self.assertIs(parse_event("+evn:XYZ,1").kind, EventKind.UNKNOWN)
        self.assertIs(parse_event("+evn:FUP,abc").kind, EventKind.UNKNOWN)
        self.assertIs(parse_event("hello").kind, EventKind.UNKNOWN)


class TestPayloads(unittest.TestCase):

    def test_parse_int(self):
        self.assertEqual(parse_int(" 42 "), 42)
        with self.assertRaises(ProtocolViolation):
            parse_int("lots")

    def test_file_entry_with_comma_free_name(self):
        entry = parse_file_entry("coffee.png,2048")
        self.assertEqual(entry.name, "coffee.png")
        self.assertEqual(entry.size, 2048)
        with self.assertRaises(ProtocolViolation):
            parse_file_entry("coffee.png")

    def test_chunk(self):
        data = b"hello badge"
        payload = f"{len(data)},{base64.b64encode(data).decode()}"
        self.assertEqual(parse_chunk(payload), data)
        self.assertEqual(parse_chunk("0,"), b"")

    def test_chunk_length_mismatch(self):
        with self.assertRaises(ProtocolViolation):
            parse_chunk("5," + base64.b64encode(b"abc").decode())
        with self.assertRaises(ProtocolViolation):
            parse_chunk("3,***")


if __name__ == '__main__':
    unittest.main()
