"""Typed records for the documents the chat core reads and writes.

Each record is built from a store ``Document`` with ``from_document``; fields the
core does not know about are dropped there instead of travelling through it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from .store import Document


CHAT_KINDS = ("direct", "group")
MESSAGE_KINDS = ("text", "image", "video", "file", "audio", "roast")
MEDIA_KINDS = ("image", "video", "file", "audio")
CALL_MODES = ("audio", "video")
CALL_STATES = ("ringing", "accepted", "declined", "cancelled", "ended")
TERMINAL_CALL_STATES = frozenset({"declined", "cancelled", "ended"})
INVITE_TARGET_TYPES = ("userId", "phone")
INVITE_STATES = ("pending", "accepted", "declined")

ROAST_BOT_ID = "ecstasy-bot"
ROAST_BOT_NAME = "ECSTASY BOT"

CHATS = "chats"
CALLS = "calls"
USERS = "users"
PROFILES = "profiles"
INVITES = "invites"


def messages_path(chat_id: str) -> str:
    return f"{CHATS}/{chat_id}/messages"


def typing_path(chat_id: str) -> str:
    return f"{CHATS}/{chat_id}/typing"


def visibility_path(chat_id: str) -> str:
    return f"{CHATS}/{chat_id}/visibility"


def contacts_path(user_id: str) -> str:
    return f"{USERS}/{user_id}/contacts"


def chat_settings_path(user_id: str) -> str:
    return f"{USERS}/{user_id}/chatSettings"


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


def _int_map(value: Any) -> Dict[str, int]:
    if not isinstance(value, dict):
        return {}
    result: Dict[str, int] = {}
    for key, item in value.items():
        parsed = _int(item)
        if parsed is not None:
            result[str(key)] = parsed
    return result


@dataclass
class Chat:
    id: str
    kind: str
    participant_ids: List[str]
    participant_data: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    owner_id: Optional[str] = None
    admin_ids: List[str] = field(default_factory=list)
    unread_counts: Dict[str, int] = field(default_factory=dict)
    last_read_at: Dict[str, int] = field(default_factory=dict)
    last_message: Optional[str] = None
    last_message_at: Optional[int] = None
    last_sender_id: Optional[str] = None
    last_sender_display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    name: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_group(self) -> bool:
        return self.kind == "group"

    @classmethod
    def from_document(cls, doc: Document) -> "Chat":
        data = doc.data
        kind = data.get("kind")
        if kind not in CHAT_KINDS:
            kind = "direct" if doc.id.startswith("direct_") else "group"
        participant_data = data.get("participantData")
        if not isinstance(participant_data, dict):
            participant_data = {}
        owner_id = _str(data.get("ownerId"))
        admin_ids = _str_list(data.get("adminIds"))
        if kind == "group" and owner_id and owner_id not in admin_ids:
            admin_ids.insert(0, owner_id)
        return cls(
            id=doc.id,
            kind=kind,
            participant_ids=_str_list(data.get("participantIds")),
            participant_data={
                str(k): dict(v) for k, v in participant_data.items() if isinstance(v, dict)
            },
            owner_id=owner_id,
            admin_ids=admin_ids,
            unread_counts=_int_map(data.get("unreadCounts")),
            last_read_at=_int_map(data.get("lastReadAt")),
            last_message=_str(data.get("lastMessage")),
            last_message_at=_int(data.get("lastMessageAt")),
            last_sender_id=_str(data.get("lastSender")),
            last_sender_display_name=_str(data.get("lastSenderDisplayName")),
            avatar_url=_str(data.get("avatarUrl")),
            name=_str(data.get("name")),
            created_at=_int(data.get("createdAt")),
            updated_at=_int(data.get("updatedAt")),
        )

    def unread_for(self, user_id: str) -> int:
        return self.unread_counts.get(user_id, 0)

    def display_name_for(self, user_id: str) -> Optional[str]:
        entry = self.participant_data.get(user_id) or {}
        return _str(entry.get("displayName"))

    def is_admin(self, user_id: str) -> bool:
        return user_id == self.owner_id or user_id in self.admin_ids

    def has_read(self, user_id: str, message: "Message") -> bool:
        """True when ``user_id`` marked the chat read at or after the message was stored."""

        if message.created_at is None:
            return False
        last_read = self.last_read_at.get(user_id)
        return last_read is not None and last_read >= message.created_at

    def read_by(self, message: "Message") -> FrozenSet[str]:
        return frozenset(
            uid
            for uid in self.participant_ids
            if uid != message.sender_id and self.has_read(uid, message)
        )


@dataclass(frozen=True)
class ReplyRef:
    message_id: str
    text: str
    sender_id: str
    sender_display_name: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> Optional["ReplyRef"]:
        if not isinstance(value, dict) or not value.get("messageId"):
            return None
        return cls(
            message_id=str(value["messageId"]),
            text=str(value.get("text") or ""),
            sender_id=str(value.get("senderId") or ""),
            sender_display_name=_str(value.get("senderDisplayName")),
        )

    def to_fields(self) -> Dict[str, Any]:
        return {
            "messageId": self.message_id,
            "text": self.text,
            "senderId": self.sender_id,
            "senderDisplayName": self.sender_display_name,
        }


@dataclass
class Message:
    id: str
    sender_id: str
    kind: str = "text"
    text: str = ""
    sender_display_name: Optional[str] = None
    media_url: Optional[str] = None
    reply_to: Optional[ReplyRef] = None
    reactions: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[int] = None
    pending: bool = False

    @property
    def is_roast(self) -> bool:
        return self.kind == "roast"

    @classmethod
    def from_document(cls, doc: Document) -> "Message":
        data = doc.data
        kind = data.get("type")
        if kind not in MESSAGE_KINDS:
            kind = "text"
        reactions = data.get("reactions")
        if not isinstance(reactions, dict):
            reactions = {}
        return cls(
            id=doc.id,
            sender_id=str(data.get("senderId") or ""),
            kind=kind,
            text=str(data.get("content") or ""),
            sender_display_name=_str(data.get("senderDisplayName")),
            media_url=_str(data.get("mediaUrl")),
            reply_to=ReplyRef.from_value(data.get("replyTo")),
            reactions={str(k): str(v) for k, v in reactions.items() if v},
            created_at=_int(data.get("createdAt")),
        )

    def reply_ref(self) -> ReplyRef:
        return ReplyRef(
            message_id=self.id,
            text=self.text,
            sender_id=self.sender_id,
            sender_display_name=self.sender_display_name,
        )


@dataclass(frozen=True)
class TypingRecord:
    user_id: str
    display_name: str
    at: int

    @classmethod
    def from_document(cls, doc: Document) -> Optional["TypingRecord"]:
        at = _int(doc.data.get("at"))
        if at is None:
            return None
        return cls(user_id=doc.id, display_name=str(doc.data.get("displayName") or ""), at=at)


@dataclass(frozen=True)
class VisibilityState:
    cleared_before: Optional[int] = None
    deleted_ids: FrozenSet[str] = frozenset()

    @classmethod
    def from_document(cls, doc: Optional[Document]) -> "VisibilityState":
        if doc is None:
            return cls()
        return cls(
            cleared_before=_int(doc.data.get("clearedBefore")),
            deleted_ids=frozenset(_str_list(doc.data.get("deletedMessageIds"))),
        )


@dataclass
class CallInvitation:
    id: str
    from_user_id: str
    from_display_name: str
    target_participant_ids: List[str]
    mode: str
    status: str
    room_name: str
    target_chat_id: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_group(self) -> bool:
        return self.target_chat_id is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CALL_STATES

    @classmethod
    def from_document(cls, doc: Document) -> "CallInvitation":
        data = doc.data
        mode = data.get("mode")
        status = data.get("status")
        return cls(
            id=doc.id,
            from_user_id=str(data.get("fromUserId") or ""),
            from_display_name=str(data.get("fromDisplayName") or "Someone"),
            target_participant_ids=_str_list(data.get("targetParticipantIds")),
            mode=mode if mode in CALL_MODES else "video",
            status=status if status in CALL_STATES else "ringing",
            room_name=str(data.get("roomName") or ""),
            target_chat_id=_str(data.get("targetChatId")),
            created_at=_int(data.get("createdAt")),
            updated_at=_int(data.get("updatedAt")),
        )


@dataclass
class Invite:
    id: str
    inviter_user_id: str
    target_type: str
    target_value: str
    note: str = ""
    status: str = "pending"
    created_at: Optional[int] = None

    @classmethod
    def from_document(cls, doc: Document) -> "Invite":
        data = doc.data
        status = data.get("status")
        return cls(
            id=doc.id,
            inviter_user_id=str(data.get("inviterUserId") or ""),
            target_type=str(data.get("targetType") or "userId"),
            target_value=str(data.get("targetValue") or ""),
            note=str(data.get("note") or ""),
            status=status if status in INVITE_STATES else "pending",
            created_at=_int(data.get("createdAt")),
        )
