"""End-to-end flows between two signed-in clients sharing one store."""

import unittest

from bakchod_sync.client import ChatClient
from bakchod_sync.config import SyncConfig
from bakchod_sync.messages import MessageDraft
from bakchod_sync.models import CHATS
from bakchod_sync.store import InMemoryStore

from sync_test_util import FakeClock


class TwoClientScenarioTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock(start_ms=0)
        self.store = InMemoryStore(now_func=self.clock.now)
        config = SyncConfig(typing_idle_ms=30)
        self.incoming = []
        self.a = ChatClient(self.store, config=config, now_func=self.clock.now)
        self.b = ChatClient(
            self.store, config=config, now_func=self.clock.now, on_incoming_calls=self.incoming.append
        )
        await self.a.sign_in("user-a", "A")
        await self.b.sign_in("user-b", "B")

    async def asyncTearDown(self) -> None:
        await self.a.close()
        await self.b.close()

    async def test_first_message_creates_exactly_one_chat(self):
        view = await self.a.open_direct("user-b")
        await self.a.chat_view().send("hey")

        self.assertEqual(self.store.document_count(CHATS), 1)
        chat = await self.a.chats.require_chat(view.chat_id)
        self.assertEqual(chat.participant_ids, ["user-a", "user-b"])
        self.assertEqual(chat.last_message, "hey")
        self.assertEqual(chat.unread_counts, {"user-a": 0, "user-b": 1})

    async def test_mark_read_reaches_the_sender(self):
        await self.a.open_direct("user-b")
        await self.a.chat_view().send("hey")
        message = self.a.chat_view().view().messages[-1]
        self.clock.now_ms = 12_000

        view_b = await self.b.open_direct("user-a")

        chat = await self.b.chats.require_chat(view_b.chat_id)
        self.assertEqual(chat.unread_for("user-b"), 0)
        self.assertGreaterEqual(chat.last_read_at["user-b"], 12_000)
        self.assertTrue(self.a.chat_view().view().is_read_by(message, "user-b"))

    async def test_clear_for_me_only_hides_older_messages_for_that_user(self):
        chat = await self.a.chats.get_or_create_direct("user-a", "A", "user-b")
        self.clock.now_ms = 90
        await self.b.messages.append(chat.id, "user-b", MessageDraft(text="at ninety"))
        self.clock.now_ms = 100
        await self.a.visibility.clear_chat_for_me(chat.id, "user-a")
        self.clock.now_ms = 110
        await self.b.messages.append(chat.id, "user-b", MessageDraft(text="at one-ten"))

        view_a = await self.a.open_direct("user-b")
        view_b = await self.b.open_direct("user-a")

        self.assertEqual([m.text for m in view_a.messages], ["at one-ten"])
        self.assertEqual([m.text for m in view_b.messages], ["at ninety", "at one-ten"])
        self.assertEqual([m.created_at for m in view_b.messages], [90, 110])

    async def test_declined_call_stops_ringing_and_cannot_be_accepted(self):
        statuses = []
        handle = await self.a.start_call(["user-b"], mode="video")
        self.a.calls.subscribe_status(handle.call_id, lambda call: statuses.append(call.status))
        self.assertEqual([c.id for c in self.b.incoming_calls], [handle.call_id])

        await self.b.respond_to_call(handle.call_id, "declined")
        late = await self.b.respond_to_call(handle.call_id, "accepted")

        self.assertEqual(statuses, ["ringing", "declined"])
        self.assertEqual(late.status, "declined")
        self.assertEqual(self.b.incoming_calls, [])
        self.assertEqual(self.incoming[-1], [])


if __name__ == "__main__":
    unittest.main()
