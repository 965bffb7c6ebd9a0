import io
import json
import os
import tempfile
import unittest

from bakchod_sync.cli import _load_frames, main, simulate
from bakchod_sync.store import InMemoryStore


def _events(buffer: io.StringIO):
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


PROVISION = [
    {"t": "user.provision", "user_id": "alice", "display_name": "Alice", "phone": "98765 43210"},
    {"t": "user.provision", "user_id": "bob", "display_name": "Bob"},
]


class TestSyncCli(unittest.TestCase):
    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "user.provision"}]))
        ndjson_buffer = io.StringIO("\n".join(["{\"t\": \"one\"}", "", "{\"t\": \"two\"}"]))
        single_buffer = io.StringIO(json.dumps({"t": "solo"}))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "user.provision"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(single_buffer)), [{"t": "solo"}])
        self.assertEqual(list(_load_frames(io.StringIO("  \n"))), [])

    def test_simulate_direct_chat_read_receipts(self):
        frames = PROVISION + [
            {"t": "chat.send", "sender_id": "alice", "peer_id": "bob", "text": "hey"},
            {"t": "chat.view", "chat_id": "direct_alice_bob", "user_id": "bob"},
            {"t": "chat.read", "chat_id": "direct_alice_bob", "user_id": "bob"},
            {"t": "chat.view", "chat_id": "direct_alice_bob", "user_id": "alice"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        events = _events(buffer)
        self.assertEqual([e["t"] for e in events], ["user.ready", "user.ready", "message.sent", "chat.view", "chat.read", "chat.view"])
        self.assertEqual(events[2]["chat_id"], "direct_alice_bob")
        self.assertEqual(events[3]["unread"], 1)
        self.assertEqual(events[3]["messages"][0]["read_by"], [])
        self.assertTrue(events[4]["ok"])
        self.assertEqual(events[5]["unread"], 0)
        self.assertEqual(events[5]["messages"][0]["text"], "hey")
        self.assertEqual(events[5]["messages"][0]["read_by"], ["bob"])

    def test_simulate_clear_hides_history_for_one_user(self):
        frames = PROVISION + [
            {"t": "chat.send", "sender_id": "alice", "peer_id": "bob", "text": "old"},
            {"t": "chat.clear", "chat_id": "direct_alice_bob", "user_id": "alice"},
            {"t": "chat.send", "sender_id": "bob", "chat_id": "direct_alice_bob", "text": "new"},
            {"t": "chat.view", "chat_id": "direct_alice_bob", "user_id": "alice"},
            {"t": "chat.view", "chat_id": "direct_alice_bob", "user_id": "bob"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        views = [e for e in _events(buffer) if e["t"] == "chat.view"]
        self.assertEqual([m["text"] for m in views[0]["messages"]], ["new"])
        self.assertEqual([m["text"] for m in views[1]["messages"]], ["old", "new"])

    def test_simulate_call_lifecycle_and_lookup(self):
        frames = PROVISION + [
            {"t": "call.create", "caller_id": "alice", "targets": ["bob"], "mode": "audio"},
        ]
        buffer = io.StringIO()
        store = InMemoryStore()
        simulate(frames, buffer, store=store)
        call_id = _events(buffer)[-1]["call_id"]

        buffer = io.StringIO()
        simulate(
            [
                {"t": "call.update", "call_id": call_id, "status": "declined", "actor_id": "bob"},
                {"t": "call.update", "call_id": call_id, "status": "accepted", "actor_id": "bob"},
                {"t": "contact.lookup", "phone": "+91 98765 43210"},
                {"t": "contact.lookup", "phone": "12345"},
            ],
            buffer,
            store=store,
        )

        events = _events(buffer)
        self.assertEqual([e.get("status") for e in events[:2]], ["declined", "declined"])
        self.assertEqual(events[2], {"t": "contact.match", "phone": "+919876543210", "matched": True, "user_id": "alice"})
        self.assertFalse(events[3]["matched"])

    def test_domain_errors_become_error_events(self):
        frames = [
            {"t": "user.provision", "user_id": "alice"},
            {"t": "chat.send", "sender_id": "alice", "peer_id": "ghost", "text": "anyone?"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        error = _events(buffer)[-1]
        self.assertEqual(error["t"], "error")
        self.assertEqual(error["frame"], "chat.send")
        self.assertEqual(error["error"], "RecipientNotReady")

    def test_frame_missing_a_field_reports_and_continues(self):
        frames = [
            {"t": "user.provision", "display_name": "Nameless"},
            {"t": "chat.read", "user_id": "alice"},
            {"t": "user.provision", "user_id": "alice"},
        ]
        buffer = io.StringIO()

        simulate(frames, buffer)

        events = _events(buffer)
        self.assertEqual([e["t"] for e in events], ["error", "error", "user.ready"])
        self.assertEqual(events[0]["error"], "MissingField")
        self.assertEqual(events[0]["message"], "missing field 'user_id'")
        self.assertEqual(events[1]["frame"], "chat.read")

    def test_unknown_frame_type_is_rejected(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "conv.send"}], io.StringIO())

    def test_main_persists_to_sqlite(self):
        with tempfile.TemporaryDirectory() as tmp:
            frames_path = os.path.join(tmp, "frames.json")
            view_path = os.path.join(tmp, "view.json")
            db_path = os.path.join(tmp, "sync.db")
            with open(frames_path, "w", encoding="utf-8") as handle:
                json.dump(PROVISION + [{"t": "chat.send", "sender_id": "bob", "peer_id": "alice", "text": "yo"}], handle)
            with open(view_path, "w", encoding="utf-8") as handle:
                json.dump([{"t": "chat.view", "chat_id": "direct_alice_bob", "user_id": "alice"}], handle)

            first = io.StringIO()
            second = io.StringIO()
            self.assertEqual(main(["simulate", "-f", frames_path, "--db", db_path], output=first), 0)
            self.assertEqual(
                main(["simulate", "-f", view_path, "--db", db_path], output=second), 0
            )

        view = _events(second)[0]
        self.assertEqual(view["unread"], 1)
        self.assertEqual([m["text"] for m in view["messages"]], ["yo"])


if __name__ == "__main__":
    unittest.main()
