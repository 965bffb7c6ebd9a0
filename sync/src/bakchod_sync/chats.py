from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .blobs import group_avatar_path
from .config import SyncConfig
from .errors import DocumentNotFound, PermissionDenied, RecipientNotReady, ValidationError
from .models import CHATS, USERS, Chat, chat_settings_path
from .store import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    Document,
    DocumentStore,
    Filter,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _escape_id(user_id: str) -> str:
    return user_id.replace("%", "%25").replace("_", "%5F")


def direct_chat_id(user_a: str, user_b: str) -> str:
    """Deterministic id for the one direct chat between two users, whoever opens it.

    Underscores inside a user id are escaped so the separator is unambiguous.
    """

    if not user_a or not user_b:
        raise ValidationError("both participants are required")
    if user_a == user_b:
        raise ValidationError("cannot open a direct chat with yourself")
    first, second = sorted((user_a, user_b))
    return f"direct_{_escape_id(first)}_{_escape_id(second)}"


@dataclass(frozen=True)
class PeerRef:
    user_id: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class GroupRef:
    chat_id: str


@dataclass(frozen=True)
class ChatHandle:
    chat_id: str
    kind: str
    participant_ids: Tuple[str, ...]

    @classmethod
    def from_chat(cls, chat: Chat) -> "ChatHandle":
        return cls(chat_id=chat.id, kind=chat.kind, participant_ids=tuple(chat.participant_ids))


class ChatDirectory:
    """Resolves, creates and administers chat documents."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        blobs=None,
        config: SyncConfig | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self.config = config or SyncConfig()
        self._now = now_func

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        doc = await self._store.get_document(CHATS, chat_id)
        return Chat.from_document(doc) if doc is not None else None

    async def require_chat(self, chat_id: str) -> Chat:
        chat = await self.get_chat(chat_id)
        if chat is None:
            raise DocumentNotFound(CHATS, chat_id)
        return chat

    async def get_or_create_chat(
        self,
        user_id: str,
        display_name: str,
        ref: Union[PeerRef, GroupRef],
    ) -> ChatHandle:
        if isinstance(ref, GroupRef):
            chat = await self.require_chat(ref.chat_id)
            if user_id not in chat.participant_ids:
                raise PermissionDenied("only group members can open this group")
            return ChatHandle.from_chat(chat)
        chat = await self.get_or_create_direct(user_id, display_name, ref.user_id, ref.display_name)
        return ChatHandle.from_chat(chat)

    async def get_or_create_direct(
        self,
        user_id: str,
        display_name: str,
        peer_id: str,
        peer_name: Optional[str] = None,
    ) -> Chat:
        chat_id = direct_chat_id(user_id, peer_id)
        peer = await self._store.get_document(USERS, peer_id)
        if peer is None:
            raise RecipientNotReady(peer_id)
        peer_display = peer_name or peer.get("displayName") or "Unknown"
        fields = {
            "kind": "direct",
            "participantIds": sorted((user_id, peer_id)),
            "participantData": {
                user_id: {"displayName": display_name or "Unknown"},
                peer_id: {"displayName": peer_display},
            },
        }
        existing = await self._store.get_document(CHATS, chat_id)
        if existing is not None and sorted(existing.get("participantIds") or []) != fields["participantIds"]:
            raise PermissionDenied(f"chat {chat_id} belongs to a different pair")
        if existing is None:
            fields["ownerId"] = user_id
            fields["createdAt"] = SERVER_TIMESTAMP
            fields["updatedAt"] = SERVER_TIMESTAMP
        # Merge so a concurrent first message from the peer keeps its unread counters.
        await self._store.set_document(CHATS, chat_id, fields, merge=True)
        return await self.require_chat(chat_id)

    async def create_group(
        self,
        owner_id: str,
        owner_name: str,
        name: str,
        member_ids: Iterable[str],
        member_names: Optional[Dict[str, str]] = None,
    ) -> Chat:
        if not name or not name.strip():
            raise ValidationError("group name is required")
        participants: List[str] = [owner_id]
        for member_id in member_ids:
            if member_id and member_id not in participants:
                participants.append(member_id)
        participant_data = {
            uid: {"displayName": (member_names or {}).get(uid) or "Unknown"} for uid in participants
        }
        participant_data[owner_id] = {"displayName": owner_name or "Unknown"}
        chat_id = await self._store.add_document(
            CHATS,
            {
                "kind": "group",
                "name": name.strip(),
                "ownerId": owner_id,
                "participantIds": participants,
                "participantData": participant_data,
                "adminIds": [owner_id],
                "unreadCounts": {},
                "lastReadAt": {},
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        return await self.require_chat(chat_id)

    async def add_members(
        self,
        chat_id: str,
        actor_id: str,
        member_ids: Iterable[str],
        member_names: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        chat = await self._require_group(chat_id)
        if not chat.is_admin(actor_id):
            raise PermissionDenied("only admins can add members")
        new_ids = [uid for uid in dict.fromkeys(member_ids) if uid and uid not in chat.participant_ids]
        if not new_ids:
            return chat.participant_ids
        fields = {"participantIds": ArrayUnion(*new_ids), "updatedAt": SERVER_TIMESTAMP}
        for uid in new_ids:
            fields[f"participantData.{uid}"] = {"displayName": (member_names or {}).get(uid) or "Unknown"}
        await self._store.update_fields(CHATS, chat_id, fields)
        return (await self.require_chat(chat_id)).participant_ids

    async def remove_member(self, chat_id: str, actor_id: str, member_id: str) -> List[str]:
        chat = await self._require_group(chat_id)
        if not chat.is_admin(actor_id):
            raise PermissionDenied("only admins can remove members")
        if member_id == chat.owner_id:
            raise PermissionDenied("cannot remove the group creator")
        await self._store.update_fields(
            CHATS,
            chat_id,
            {
                "participantIds": ArrayRemove(member_id),
                "adminIds": ArrayRemove(member_id),
                f"participantData.{member_id}": DELETE_FIELD,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        return (await self.require_chat(chat_id)).participant_ids

    async def set_admin(self, chat_id: str, actor_id: str, target_id: str, make_admin: bool) -> List[str]:
        chat = await self._require_group(chat_id)
        if target_id not in chat.participant_ids:
            raise ValidationError("user is not in this group")
        if not chat.is_admin(actor_id):
            raise PermissionDenied("only admins can change admin status")
        if make_admin:
            change = ArrayUnion(target_id)
        else:
            if target_id == chat.owner_id:
                raise PermissionDenied("cannot remove the group creator as admin")
            if actor_id != chat.owner_id:
                raise PermissionDenied("only the group creator can demote admins")
            change = ArrayRemove(target_id)
        await self._store.update_fields(
            CHATS, chat_id, {"adminIds": change, "updatedAt": SERVER_TIMESTAMP}
        )
        return (await self.require_chat(chat_id)).admin_ids

    async def update_group_avatar(
        self,
        chat_id: str,
        actor_id: str,
        filename: str,
        data: bytes,
        content_type: str = "image/jpeg",
    ) -> str:
        if self._blobs is None:
            raise ValidationError("no blob store configured for uploads")
        chat = await self._require_group(chat_id)
        if actor_id not in chat.participant_ids:
            raise PermissionDenied("only participants can change the group photo")
        url = await self._blobs.upload(group_avatar_path(chat_id, filename, self._now()), data, content_type)
        await self._store.update_fields(
            CHATS, chat_id, {"avatarUrl": url, "updatedAt": SERVER_TIMESTAMP}
        )
        return url

    def subscribe_user_chats(self, user_id: str, callback: Callable[[List[Chat]], None]) -> Callable[[], None]:
        def on_snapshot(docs: List[Document]) -> None:
            chats = [Chat.from_document(doc) for doc in docs]
            chats.sort(key=lambda c: c.updated_at or c.last_message_at or 0, reverse=True)
            callback(chats)

        return self._store.subscribe(
            CHATS,
            on_snapshot,
            filters=[Filter("participantIds", "array-contains", user_id)],
            limit=self.config.chat_list_limit,
        )

    async def get_mute(self, user_id: str, chat_id: str) -> bool:
        doc = await self._store.get_document(chat_settings_path(user_id), chat_id)
        return bool(doc is not None and doc.get("muted"))

    async def set_mute(self, user_id: str, chat_id: str, muted: bool) -> None:
        await self._store.set_document(
            chat_settings_path(user_id),
            chat_id,
            {"muted": bool(muted), "updatedAt": SERVER_TIMESTAMP},
            merge=True,
        )

    async def _require_group(self, chat_id: str) -> Chat:
        chat = await self.require_chat(chat_id)
        if not chat.is_group:
            raise ValidationError("only group chats have members and admins")
        return chat
