from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .blobs import chat_media_path
from .config import SyncConfig
from .errors import DocumentNotFound, PermissionDenied, ValidationError
from .models import (
    CHATS,
    MEDIA_KINDS,
    MESSAGE_KINDS,
    ROAST_BOT_ID,
    Message,
    ReplyRef,
    messages_path,
)
from .store import DELETE_FIELD, SERVER_TIMESTAMP, Document, DocumentStore, Increment, OrderBy, SetWrite, UpdateWrite


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class MessageDraft:
    text: str = ""
    kind: str = "text"
    media_url: Optional[str] = None
    reply_to: Optional[ReplyRef] = None

    def validate(self, sender_id: str) -> None:
        if self.kind not in MESSAGE_KINDS:
            raise ValidationError(f"unsupported message kind: {self.kind}")
        if self.kind == "roast" and sender_id != ROAST_BOT_ID:
            raise ValidationError("roast messages can only be posted by the roast bot")
        if self.kind in MEDIA_KINDS and not self.media_url:
            raise ValidationError(f"{self.kind} messages need a media URL")
        if self.kind not in MEDIA_KINDS and not self.text.strip():
            raise ValidationError("message text is required")

    def preview(self) -> str:
        if self.text.strip():
            return self.text
        return f"[{self.kind}]"


class MessageLog:
    """Append, read and watch the ordered message log of one chat at a time."""

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

    async def append(
        self,
        chat_id: str,
        sender_id: str,
        draft: MessageDraft,
        *,
        sender_display_name: Optional[str] = None,
    ) -> str:
        """Store the message and bump chat metadata in one atomic batch.

        Every participant except the sender gets its unread counter incremented in
        the same batch that writes the message and the last-message preview.
        """

        if not sender_id:
            raise ValidationError("sender is required")
        draft.validate(sender_id)
        chat = await self._store.get_document(CHATS, chat_id)
        if chat is None:
            raise DocumentNotFound(CHATS, chat_id)
        participants = [str(uid) for uid in chat.get("participantIds", []) if uid]
        if sender_id != ROAST_BOT_ID and sender_id not in participants:
            raise PermissionDenied("only participants can post to this chat")

        message_id = self._store.new_id()
        fields = {
            "senderId": sender_id,
            "senderDisplayName": sender_display_name,
            "type": draft.kind,
            "content": draft.text,
            "mediaUrl": draft.media_url,
            "reactions": {},
            "createdAt": SERVER_TIMESTAMP,
        }
        if draft.reply_to is not None:
            fields["replyTo"] = draft.reply_to.to_fields()
        chat_update = {
            "lastMessage": draft.preview(),
            "lastMessageAt": SERVER_TIMESTAMP,
            "lastSender": sender_id,
            "lastSenderDisplayName": sender_display_name,
            "updatedAt": SERVER_TIMESTAMP,
        }
        for uid in participants:
            if uid != sender_id:
                chat_update[f"unreadCounts.{uid}"] = Increment(1)
        await self._store.run_batch(
            [
                SetWrite(messages_path(chat_id), message_id, fields),
                UpdateWrite(CHATS, chat_id, chat_update),
            ]
        )
        return message_id

    async def history(self, chat_id: str, limit: Optional[int] = None) -> List[Message]:
        docs = await self._store.query(
            messages_path(chat_id),
            order_by=OrderBy("createdAt", descending=True),
            limit=self._limit(limit),
        )
        return [Message.from_document(doc) for doc in reversed(docs)]

    def subscribe(
        self,
        chat_id: str,
        on_snapshot: Callable[[List[Message]], None],
        limit: Optional[int] = None,
    ) -> Callable[[], None]:
        """Watch the most recent messages; each delivery is the full window, oldest first."""

        def deliver(docs: List[Document]) -> None:
            on_snapshot([Message.from_document(doc) for doc in reversed(docs)])

        return self._store.subscribe(
            messages_path(chat_id),
            deliver,
            order_by=OrderBy("createdAt", descending=True),
            limit=self._limit(limit),
        )

    async def get(self, chat_id: str, message_id: str) -> Optional[Message]:
        doc = await self._store.get_document(messages_path(chat_id), message_id)
        return Message.from_document(doc) if doc is not None else None

    async def delete_for_everyone(self, chat_id: str, message_id: str, actor_id: str) -> None:
        message = await self.get(chat_id, message_id)
        if message is None:
            raise DocumentNotFound(messages_path(chat_id), message_id)
        if message.is_roast:
            raise ValidationError("roast messages cannot be deleted for everyone")
        if message.sender_id != actor_id:
            raise PermissionDenied("only the sender can delete a message for everyone")
        await self._store.delete_document(messages_path(chat_id), message_id)

    async def react(self, chat_id: str, message_id: str, user_id: str, emoji: Optional[str]) -> bool:
        """Set or clear the user's single reaction; returns False if the message is gone."""

        path = messages_path(chat_id)
        if await self._store.get_document(path, message_id) is None:
            return False
        value = emoji if emoji else DELETE_FIELD
        try:
            await self._store.update_fields(path, message_id, {f"reactions.{user_id}": value})
        except DocumentNotFound:
            return False
        return True

    async def upload_attachment(
        self,
        chat_id: str,
        user_id: str,
        filename: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        if self._blobs is None:
            raise ValidationError("no blob store configured for uploads")
        path = chat_media_path(chat_id, user_id, filename, self._now())
        return await self._blobs.upload(path, data, content_type or "application/octet-stream")

    def _limit(self, limit: Optional[int]) -> int:
        return self.config.history_limit if limit is None else limit
