import os
import sqlite3
import tempfile
import unittest

from bakchod_sync.errors import PreconditionFailed
from bakchod_sync.messages import MessageDraft, MessageLog
from bakchod_sync.models import CHATS
from bakchod_sync.sqlite_backend import SQLiteBackend
from bakchod_sync.sqlite_store import SQLiteStore
from bakchod_sync.store import SERVER_TIMESTAMP, Filter, Increment, SetWrite, UpdateWrite

from sync_test_util import FakeClock


class SQLiteStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "sync.db")
        self.clock = FakeClock(start_ms=10_000)
        self.store = SQLiteStore(SQLiteBackend(self.db_path), now_func=self.clock.now)

    def tearDown(self) -> None:
        self.store.close()
        self.tmpdir.cleanup()

    def _reopen(self) -> SQLiteStore:
        self.store.close()
        self.store = SQLiteStore(SQLiteBackend(self.db_path), now_func=self.clock.now)
        return self.store

    async def test_documents_survive_restart(self):
        await self.store.set_document("chats", "c1", {"participantIds": ["a", "b"], "unreadCounts": {"b": 1}})
        await self.store.update_fields("chats", "c1", {"unreadCounts.b": Increment(1)})

        store = self._reopen()

        doc = await store.get_document("chats", "c1")
        self.assertEqual(doc.data["unreadCounts"], {"b": 2})
        found = await store.query("chats", [Filter("participantIds", "array-contains", "a")])
        self.assertEqual([d.id for d in found], ["c1"])

    async def test_server_clock_is_monotonic_across_restart(self):
        before = await self.store.run_batch([SetWrite("c", "a", {"at": SERVER_TIMESTAMP})])

        self.clock.now_ms = 1_000
        store = self._reopen()
        after = await store.run_batch([SetWrite("c", "b", {"at": SERVER_TIMESTAMP})])

        self.assertEqual(before, 10_000)
        self.assertEqual(after, 10_001)

    async def test_failed_batch_rolls_back(self):
        await self.store.set_document("calls", "k", {"status": "declined"})

        with self.assertRaises(PreconditionFailed):
            await self.store.run_batch(
                [
                    SetWrite("c", "side-effect", {"a": 1}),
                    UpdateWrite("calls", "k", {"status": "accepted"}, if_match={"status": "ringing"}),
                ]
            )

        self.assertIsNone(await self.store.get_document("c", "side-effect"))
        store = self._reopen()
        self.assertIsNone(await store.get_document("c", "side-effect"))

    async def test_message_log_runs_on_sqlite(self):
        await self.store.set_document(CHATS, "c1", {"participantIds": ["a", "b"], "kind": "direct"})
        log = MessageLog(self.store)
        seen = []
        log.subscribe("c1", lambda messages: seen.append([m.text for m in messages]))

        await log.append("c1", "a", MessageDraft(text="one"))
        self.clock.advance(1)
        await log.append("c1", "b", MessageDraft(text="two"))

        self.assertEqual(seen[-1], ["one", "two"])
        chat = await self.store.get_document(CHATS, "c1")
        self.assertEqual(chat.data["unreadCounts"], {"a": 1, "b": 1})

    def test_schema_version_is_recorded(self):
        conn = sqlite3.connect(self.db_path)
        try:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
        finally:
            conn.close()
        self.assertEqual(version, 1)

    def test_unknown_schema_version_is_rejected(self):
        self.store.close()
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA user_version = 7")
        conn.commit()
        conn.close()

        with self.assertRaises(ValueError):
            SQLiteBackend(self.db_path)
        self.store = SQLiteStore(SQLiteBackend(":memory:"))


if __name__ == "__main__":
    unittest.main()
