import io
import json
import logging
import os
import tempfile
import unittest

from chatsync.resolver import resolve
from chatsync.server import _load_frames, main, simulate

DM = resolve("u1", "u2")

REGISTER = [
    {"t": "user.register", "user_id": "u1", "display_name": "Ada", "contact_address": "ada@example.com"},
    {"t": "user.register", "user_id": "u2", "display_name": "Brian", "contact_address": "brian@example.com"},
]


def _run(frames: list[dict]) -> list[dict]:
    buffer = io.StringIO()
    simulate(frames, buffer)
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


class TestChatsyncCli(unittest.TestCase):
    def tearDown(self) -> None:
        logger = logging.getLogger("chatsync")
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.setLevel(logging.WARNING)
        logger.propagate = True

    def test_load_frames_accepts_array_object_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "conv.start"}]))
        object_buffer = io.StringIO(json.dumps({"t": "conv.start"}))
        ndjson_buffer = io.StringIO("\n".join(['{"t": "one"}', "", '{"t": "two"}']))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "conv.start"}])
        self.assertEqual(list(_load_frames(object_buffer)), [{"t": "conv.start"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_simulate_streams_snapshot_then_live_events(self):
        frames = REGISTER + [
            {"t": "conv.start", "self_id": "u1", "other_id": "u2"},
            {"t": "conv.send", "conv_key": DM, "sender_id": "u1", "text": "hello"},
            {"t": "conv.open", "viewer": "u2", "conv_key": DM},
            {"t": "conv.send", "conv_key": DM, "sender_id": "u1", "text": "world"},
            {"t": "conv.close", "viewer": "u2", "conv_key": DM},
            {"t": "conv.send", "conv_key": DM, "sender_id": "u1", "text": "unseen"},
        ]

        lines = _run(frames)
        types = [line["t"] for line in lines]

        self.assertEqual(types[:3], ["user.registered", "user.registered", "conv.started"])
        self.assertEqual(lines[2]["conv_key"], DM)
        viewed = [line for line in lines if line.get("viewer") == "u2"]
        self.assertEqual([line["t"] for line in viewed], ["conv.snapshot", "conv.message", "conv.metadata"])
        self.assertEqual([m["text"] for m in viewed[0]["body"]["messages"]], ["hello"])
        self.assertEqual(viewed[1]["body"]["text"], "world")
        self.assertEqual(viewed[2]["body"]["last_message_preview"], "world")
        sent = [line["message"]["text"] for line in lines if line["t"] == "conv.sent"]
        self.assertEqual(sent, ["hello", "world", "unseen"])

    def test_simulate_reports_errors_and_continues(self):
        frames = REGISTER + [
            {"t": "conv.start", "self_id": "u1", "other_id": "u1"},
            {"t": "conv.send", "conv_key": DM, "sender_id": "u1", "text": "   "},
            {"t": "user.lookup", "contact_address": "ADA@example.com"},
            {"t": "user.lookup", "contact_address": "nobody@example.com"},
        ]

        lines = _run(frames)

        errors = [line["code"] for line in lines if line["t"] == "error"]
        self.assertEqual(errors, ["invalid_target", "invalid_message", "not_found"])
        found = [line for line in lines if line["t"] == "user.found"]
        self.assertEqual(found[0]["user"]["user_id"], "u1")

    def test_simulate_rejects_unknown_frames(self):
        with self.assertRaises(ValueError):
            _run([{"t": "conv.teleport"}])

    def test_main_reads_frames_from_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "frames.json")
            with open(path, "w", encoding="utf-8") as handle:
                json.dump(REGISTER, handle)

            buffer = io.StringIO()
            exit_code = main(["--log-level", "ERROR", "simulate", "-f", path], output=buffer)

        self.assertEqual(exit_code, 0)
        users = [json.loads(line)["user"]["user_id"] for line in buffer.getvalue().splitlines()]
        self.assertEqual(users, ["u1", "u2"])


if __name__ == "__main__":
    unittest.main()
