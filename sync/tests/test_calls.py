import asyncio
import re
import unittest

from bakchod_sync.calls import CallSignaling, can_transition, make_room_name
from bakchod_sync.chats import ChatDirectory
from bakchod_sync.errors import DocumentNotFound, PermissionDenied, ValidationError
from bakchod_sync.store import InMemoryStore

from sync_test_util import FakeClock, provision


class TransitionTableTests(unittest.TestCase):
    def test_allowed_transitions(self):
        self.assertTrue(can_transition("ringing", "accepted"))
        self.assertTrue(can_transition("ringing", "declined"))
        self.assertTrue(can_transition("ringing", "cancelled"))
        self.assertTrue(can_transition("accepted", "ended"))
        self.assertFalse(can_transition("ringing", "ended"))
        self.assertFalse(can_transition("accepted", "declined"))
        for terminal in ("declined", "cancelled", "ended"):
            self.assertFalse(can_transition(terminal, "accepted"))

    def test_room_name_shape(self):
        self.assertRegex(make_room_name(1234), re.compile(r"^bakchod-1234-[a-z0-9]{8}$"))


class CallSignalingTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.store = InMemoryStore(now_func=self.clock.now)
        self.calls = CallSignaling(self.store, now_func=self.clock.now)
        for uid in ("alice", "bob", "carol"):
            await provision(self.store, uid)

    async def test_accept_then_end(self):
        handle = await self.calls.create_call("alice", "Alice", ["bob"])
        statuses = []
        self.calls.subscribe_status(handle.call_id, lambda call: statuses.append(call.status))

        await self.calls.update_status(handle.call_id, "accepted", actor_id="bob")
        final = await self.calls.update_status(handle.call_id, "ended", actor_id="alice")

        self.assertEqual(statuses, ["ringing", "accepted", "ended"])
        self.assertEqual(final.status, "ended")
        self.assertTrue(final.is_terminal)
        self.assertTrue(handle.room_name.startswith(f"bakchod-{self.clock.now()}-"))

    async def test_terminal_state_never_moves(self):
        handle = await self.calls.create_call("alice", "Alice", ["bob"])
        await self.calls.update_status(handle.call_id, "declined", actor_id="bob")

        with self.assertLogs("bakchod_sync.calls", level="INFO"):
            call = await self.calls.update_status(handle.call_id, "accepted", actor_id="bob")

        self.assertEqual(call.status, "declined")

    async def test_simultaneous_accept_and_cancel_resolve_to_one_state(self):
        handle = await self.calls.create_call("alice", "Alice", ["bob"])

        accepted, cancelled = await asyncio.gather(
            self.calls.update_status(handle.call_id, "accepted", actor_id="bob"),
            self.calls.update_status(handle.call_id, "cancelled", actor_id="alice"),
        )

        final = await self.calls.get_call(handle.call_id)
        self.assertIn(final.status, ("accepted", "cancelled"))
        self.assertEqual(accepted.status, cancelled.status)

    async def test_actor_rules(self):
        handle = await self.calls.create_call("alice", "Alice", ["bob"])

        with self.assertRaises(PermissionDenied):
            await self.calls.update_status(handle.call_id, "cancelled", actor_id="bob")
        with self.assertRaises(PermissionDenied):
            await self.calls.update_status(handle.call_id, "accepted", actor_id="alice")
        with self.assertRaises(PermissionDenied):
            await self.calls.update_status(handle.call_id, "ended", actor_id="carol")
        with self.assertRaises(ValidationError):
            await self.calls.update_status(handle.call_id, "ringing")
        with self.assertRaises(DocumentNotFound):
            await self.calls.update_status("missing", "accepted")

    async def test_create_validation(self):
        with self.assertRaises(ValidationError):
            await self.calls.create_call("alice", "Alice", ["alice"])
        with self.assertRaises(ValidationError):
            await self.calls.create_call("alice", "Alice", ["bob"], mode="hologram")

    async def test_group_call_rings_current_members_except_caller(self):
        chats = ChatDirectory(self.store)
        group = await chats.create_group("alice", "Alice", "Tribe", ["bob", "carol"])

        handle = await self.calls.create_call("alice", "Alice", group_chat_id=group.id)

        call = await self.calls.get_call(handle.call_id)
        self.assertEqual(call.target_participant_ids, ["bob", "carol"])
        self.assertTrue(call.is_group)
        with self.assertRaises(PermissionDenied):
            await self.calls.create_call("dave", "Dave", group_chat_id=group.id)

    async def test_incoming_feed_only_shows_ringing_calls_from_others(self):
        bob_incoming = []
        alice_incoming = []
        self.calls.subscribe_incoming("bob", lambda calls: bob_incoming.append([c.from_user_id for c in calls]))
        self.calls.subscribe_incoming("alice", lambda calls: alice_incoming.append([c.id for c in calls]))

        handle = await self.calls.create_call("alice", "Alice", ["bob"])
        await self.calls.update_status(handle.call_id, "declined", actor_id="bob")

        self.assertEqual(bob_incoming, [[], ["alice"], []])
        self.assertEqual(alice_incoming, [[]])

    async def test_own_call_in_target_list_is_not_incoming(self):
        await self.store.set_document(
            "calls",
            "odd",
            {
                "fromUserId": "alice",
                "targetParticipantIds": ["alice", "bob"],
                "status": "ringing",
                "mode": "audio",
                "roomName": "r",
            },
        )
        seen = []

        self.calls.subscribe_incoming("alice", seen.append)

        self.assertEqual(seen, [[]])


if __name__ == "__main__":
    unittest.main()
