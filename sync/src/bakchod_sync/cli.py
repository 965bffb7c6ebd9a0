"""Command line entry point with a frame-driven simulation of the sync core."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Iterable, Optional, TextIO

from .calls import CallSignaling
from .chats import ChatDirectory
from .config import SyncConfig, load_sync_config_from_env
from .contacts import ContactDirectory
from .errors import ChatSyncError
from .messages import MessageDraft, MessageLog
from .models import ReplyRef
from .presence import PresenceTracker
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import DocumentStore, InMemoryStore
from .visibility import VisibilityLayer, filter_visible


class _Simulation:
    def __init__(self, store: DocumentStore, config: SyncConfig, output: TextIO) -> None:
        self.store = store
        self.output = output
        self.contacts = ContactDirectory(store, country_code=config.country_code)
        self.chats = ChatDirectory(store, config=config)
        self.messages = MessageLog(store, config=config)
        self.presence = PresenceTracker(store, config)
        self.visibility = VisibilityLayer(store)
        self.calls = CallSignaling(store, config)
        self.names: Dict[str, str] = {}

    def emit(self, message: Dict[str, Any]) -> None:
        self.output.write(json.dumps(message) + "\n")

    def name_of(self, user_id: str) -> str:
        return self.names.get(user_id, user_id)

    async def handle(self, frame: dict) -> None:
        frame_type = frame.get("t")
        handler = self.HANDLERS.get(frame_type)
        if handler is None:
            raise ValueError(f"unsupported frame type: {frame_type}")
        try:
            await handler(self, frame)
        except ChatSyncError as exc:
            self.emit({"t": "error", "frame": frame_type, "error": type(exc).__name__, "message": str(exc)})
        except KeyError as exc:
            self.emit(
                {"t": "error", "frame": frame_type, "error": "MissingField", "message": f"missing field {exc.args[0]!r}"}
            )

    async def _provision(self, frame: dict) -> None:
        user_id = frame["user_id"]
        display_name = frame.get("display_name") or user_id
        await self.contacts.ensure_profile(user_id, display_name, phone=frame.get("phone"))
        self.names[user_id] = display_name
        self.emit({"t": "user.ready", "user_id": user_id})

    async def _group_create(self, frame: dict) -> None:
        owner_id = frame["owner_id"]
        members = frame.get("member_ids", [])
        chat = await self.chats.create_group(
            owner_id,
            self.name_of(owner_id),
            frame["name"],
            members,
            {uid: self.name_of(uid) for uid in members},
        )
        self.emit({"t": "group.created", "chat_id": chat.id, "participant_ids": chat.participant_ids})

    async def _send(self, frame: dict) -> None:
        sender_id = frame["sender_id"]
        chat_id = frame.get("chat_id")
        if chat_id is None:
            chat = await self.chats.get_or_create_direct(
                sender_id, self.name_of(sender_id), frame["peer_id"], self.names.get(frame["peer_id"])
            )
            chat_id = chat.id
        reply_to = ReplyRef.from_value(frame.get("reply_to"))
        draft = MessageDraft(
            text=frame.get("text", ""),
            kind=frame.get("kind", "text"),
            media_url=frame.get("media_url"),
            reply_to=reply_to,
        )
        message_id = await self.messages.append(
            chat_id, sender_id, draft, sender_display_name=self.name_of(sender_id)
        )
        self.emit({"t": "message.sent", "chat_id": chat_id, "message_id": message_id})

    async def _read(self, frame: dict) -> None:
        marked = await self.presence.mark_read(frame["chat_id"], frame["user_id"])
        self.emit({"t": "chat.read", "chat_id": frame["chat_id"], "user_id": frame["user_id"], "ok": marked})

    async def _clear(self, frame: dict) -> None:
        state = await self.visibility.clear_chat_for_me(frame["chat_id"], frame["user_id"])
        self.emit(
            {
                "t": "chat.cleared",
                "chat_id": frame["chat_id"],
                "user_id": frame["user_id"],
                "cleared_before": state.cleared_before,
            }
        )

    async def _view(self, frame: dict) -> None:
        chat_id = frame["chat_id"]
        user_id = frame["user_id"]
        chat = await self.chats.require_chat(chat_id)
        state = await self.visibility.get_state(chat_id, user_id)
        visible = filter_visible(await self.messages.history(chat_id, frame.get("limit")), state)
        self.emit(
            {
                "t": "chat.view",
                "chat_id": chat_id,
                "user_id": user_id,
                "unread": chat.unread_for(user_id),
                "messages": [
                    {
                        "id": message.id,
                        "sender_id": message.sender_id,
                        "kind": message.kind,
                        "text": message.text,
                        "created_at": message.created_at,
                        "read_by": sorted(chat.read_by(message)),
                    }
                    for message in visible
                ],
            }
        )

    async def _call_create(self, frame: dict) -> None:
        caller_id = frame["caller_id"]
        handle = await self.calls.create_call(
            caller_id,
            self.name_of(caller_id),
            frame.get("targets"),
            mode=frame.get("mode", "video"),
            group_chat_id=frame.get("group_chat_id"),
        )
        self.emit({"t": "call.created", "call_id": handle.call_id, "room_name": handle.room_name})

    async def _call_update(self, frame: dict) -> None:
        call = await self.calls.update_status(frame["call_id"], frame["status"], actor_id=frame.get("actor_id"))
        self.emit({"t": "call.status", "call_id": call.id, "status": call.status})

    async def _lookup(self, frame: dict) -> None:
        match = await self.contacts.lookup_by_phone(frame.get("phone"))
        self.emit(
            {
                "t": "contact.match",
                "phone": self.contacts.normalize(frame.get("phone")),
                "matched": match.matched,
                "user_id": match.user_id,
            }
        )

    HANDLERS = {
        "user.provision": _provision,
        "group.create": _group_create,
        "chat.send": _send,
        "chat.read": _read,
        "chat.clear": _clear,
        "chat.view": _view,
        "call.create": _call_create,
        "call.update": _call_update,
        "contact.lookup": _lookup,
    }


async def _simulate(frames: Iterable[dict], output: TextIO, store: DocumentStore, config: SyncConfig) -> None:
    simulation = _Simulation(store, config, output)
    for frame in frames:
        await simulation.handle(frame)


def simulate(
    frames: Iterable[dict],
    output: TextIO,
    *,
    store: Optional[DocumentStore] = None,
    config: Optional[SyncConfig] = None,
) -> None:
    """Process JSON frames through the sync core and emit one JSON line per result."""

    asyncio.run(_simulate(frames, output, store or InMemoryStore(), config or SyncConfig()))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file:
            frames = _load_frames(args.file)
    config = load_sync_config_from_env()
    if args.db is None:
        simulate(frames, output, config=config)
        return 0
    store = SQLiteStore(SQLiteBackend(args.db))
    try:
        simulate(frames, output, store=store, config=config)
    finally:
        store.close()
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="bakchod_sync", description="Bakchod chat sync CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Run chat frames through the sync core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)
    return _run_simulation(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
