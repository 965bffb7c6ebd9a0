from __future__ import annotations

from typing import AbstractSet, Iterable, List, Optional

from .models import Message, VisibilityState, visibility_path
from .store import SERVER_TIMESTAMP, ArrayUnion, DocumentStore


def is_visible(message: Message, cleared_before: Optional[int], deleted_ids: AbstractSet[str]) -> bool:
    """Per-user view rule: newer than the user's clear cut-off and not deleted for them.

    A message without a server timestamp yet (a local optimistic row) is newer
    than any cut-off.
    """

    if message.id in deleted_ids:
        return False
    if cleared_before is None or message.created_at is None:
        return True
    return message.created_at > cleared_before


def filter_visible(messages: Iterable[Message], state: VisibilityState) -> List[Message]:
    return [m for m in messages if is_visible(m, state.cleared_before, state.deleted_ids)]


class VisibilityLayer:
    """Clear-for-me and delete-for-me, kept beside the shared log and never in it."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_state(self, chat_id: str, user_id: str) -> VisibilityState:
        doc = await self._store.get_document(visibility_path(chat_id), user_id)
        return VisibilityState.from_document(doc)

    async def clear_chat_for_me(self, chat_id: str, user_id: str) -> VisibilityState:
        await self._store.set_document(
            visibility_path(chat_id),
            user_id,
            {"clearedBefore": SERVER_TIMESTAMP},
            merge=True,
        )
        return await self.get_state(chat_id, user_id)

    async def delete_message_for_me(self, chat_id: str, user_id: str, message_id: str) -> VisibilityState:
        await self._store.set_document(
            visibility_path(chat_id),
            user_id,
            {"deletedMessageIds": ArrayUnion(message_id)},
            merge=True,
        )
        return await self.get_state(chat_id, user_id)
