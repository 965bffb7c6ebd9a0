from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from .config import SyncConfig
from .errors import DocumentNotFound
from .models import CHATS, Chat, TypingRecord, typing_path
from .store import SERVER_TIMESTAMP, Document, DocumentStore


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class PresenceTracker:
    """Typing indicators and read receipts for a chat.

    Each user only ever writes its own typing record and its own read fields,
    so concurrent writers never touch the same key.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: SyncConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self.config = config or SyncConfig()
        self._now = now_func

    async def set_typing(self, chat_id: str, user_id: str, display_name: str, is_typing: bool) -> None:
        path = typing_path(chat_id)
        if is_typing:
            await self._store.set_document(
                path, user_id, {"displayName": display_name, "at": SERVER_TIMESTAMP}, merge=True
            )
        else:
            await self._store.delete_document(path, user_id)

    def fresh_typers(self, records: List[TypingRecord], *, exclude_user: Optional[str] = None) -> List[TypingRecord]:
        """Drop records older than the staleness window, whether or not they were deleted."""

        now = self._now()
        return [
            record
            for record in records
            if record.user_id != exclude_user and now - record.at < self.config.typing_stale_ms
        ]

    def subscribe_typing(
        self,
        chat_id: str,
        on_typers: Callable[[List[TypingRecord]], None],
        *,
        exclude_user: Optional[str] = None,
        on_records: Optional[Callable[[List[TypingRecord]], None]] = None,
    ) -> Callable[[], None]:
        def deliver(docs: List[Document]) -> None:
            records = [r for r in (TypingRecord.from_document(doc) for doc in docs) if r is not None]
            if on_records is not None:
                on_records(records)
            on_typers(self.fresh_typers(records, exclude_user=exclude_user))

        return self._store.subscribe(typing_path(chat_id), deliver)

    async def mark_read(self, chat_id: str, user_id: str) -> bool:
        """Stamp the caller's last-read time with server "now" and zero its unread counter."""

        try:
            await self._store.update_fields(
                CHATS,
                chat_id,
                {
                    f"unreadCounts.{user_id}": 0,
                    f"lastReadAt.{user_id}": SERVER_TIMESTAMP,
                },
            )
        except DocumentNotFound:
            logger.debug("mark_read on missing chat %s ignored", chat_id)
            return False
        return True

    def subscribe_read_state(
        self,
        chat_id: str,
        on_read_map: Callable[[Dict[str, int]], None],
        *,
        on_chat: Optional[Callable[[Optional[Chat]], None]] = None,
    ) -> Callable[[], None]:
        def deliver(doc: Optional[Document]) -> None:
            chat = Chat.from_document(doc) if doc is not None else None
            if on_chat is not None:
                on_chat(chat)
            on_read_map(dict(chat.last_read_at) if chat is not None else {})

        return self._store.subscribe_document(CHATS, chat_id, deliver)


TypingSink = Callable[[bool], Awaitable[None]]


class TypingPublisher:
    """Debounced typing signal for one user in one chat.

    ``idle`` → first keystroke publishes ``True`` → ``typing``. Further keystrokes
    re-arm the idle timer and refresh the record once it is older than
    ``typing_refresh_ms``. The timer firing, ``sent()`` or ``close()`` publishes
    ``False`` and returns to ``idle``.
    """

    IDLE = "idle"
    TYPING = "typing"

    def __init__(
        self,
        sink: TypingSink,
        config: SyncConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._sink = sink
        self.config = config or SyncConfig()
        self._now = now_func
        self.state = self.IDLE
        self._last_published_ms = 0
        self._timer: asyncio.Task | None = None

    async def keystroke(self) -> None:
        now = self._now()
        publish = self.state == self.IDLE or now - self._last_published_ms >= self.config.typing_refresh_ms
        self.state = self.TYPING
        self._arm_timer()
        if publish:
            self._last_published_ms = now
            await self._sink(True)

    async def sent(self) -> None:
        await self._stop()

    async def close(self) -> None:
        await self._stop()

    def detach(self) -> None:
        """Stop the idle timer without publishing; the record is left to go stale."""

        self._cancel_timer()
        self.state = self.IDLE

    def _arm_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire_after_idle())

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _expire_after_idle(self) -> None:
        try:
            await asyncio.sleep(self.config.typing_idle_s)
        except asyncio.CancelledError:
            return
        self._timer = None
        if self.state == self.TYPING:
            self.state = self.IDLE
            try:
                await self._sink(False)
            except Exception:
                logger.warning("clearing typing state after idle timeout failed", exc_info=True)

    async def _stop(self) -> None:
        self._cancel_timer()
        if self.state == self.TYPING:
            self.state = self.IDLE
            await self._sink(False)
