from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Protocol, Set, Union

from .chats import ChatDirectory, GroupRef, PeerRef
from .config import SyncConfig
from .errors import ValidationError
from .messages import MessageDraft, MessageLog
from .models import Chat, Message, ReplyRef, TypingRecord, VisibilityState
from .presence import PresenceTracker, TypingPublisher
from .visibility import VisibilityLayer, filter_visible, is_visible


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class Notifier(Protocol):
    def play_sound(self, chat_id: str, message: Message) -> None: ...

    def celebrate(self, chat_id: str, message: Message) -> None: ...


class NullNotifier:
    def play_sound(self, chat_id: str, message: Message) -> None:
        return None

    def celebrate(self, chat_id: str, message: Message) -> None:
        return None


@dataclass
class ChatView:
    chat_id: Optional[str]
    chat: Optional[Chat] = None
    messages: List[Message] = field(default_factory=list)
    typers: List[TypingRecord] = field(default_factory=list)
    muted: bool = False

    def read_by(self, message: Message) -> FrozenSet[str]:
        if self.chat is None:
            return frozenset()
        return self.chat.read_by(message)

    def is_read_by(self, message: Message, user_id: str) -> bool:
        return self.chat is not None and self.chat.has_read(user_id, message)

    @property
    def unread_counts(self) -> Dict[str, int]:
        return dict(self.chat.unread_counts) if self.chat is not None else {}


class ActiveSubscriptions:
    """Everything tied to one open chat: live feeds and background tasks."""

    def __init__(self) -> None:
        self._unsubscribers: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()

    def add(self, unsubscribe: Callable[[], None]) -> None:
        self._unsubscribers.append(unsubscribe)

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background chat task failed", exc_info=exc)

    async def settle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in reversed(unsubscribers):
            unsubscribe()
        for task in list(self._tasks):
            task.cancel()

    def __len__(self) -> int:
        return len(self._unsubscribers)


class ChatViewReconciler:
    """Per-user orchestrator for the chat that is currently open.

    It owns the live feeds of the active chat (messages, chat document, typing)
    and merges them with optimistic sends and the user's visibility state into
    a ``ChatView``. Every callback and every completed write checks the
    generation captured when it started, so results that belong to a chat the
    user already left are dropped instead of leaking into the new one.
    """

    def __init__(
        self,
        user_id: str,
        display_name: str,
        *,
        messages: MessageLog,
        presence: PresenceTracker,
        visibility: VisibilityLayer,
        chats: ChatDirectory,
        config: SyncConfig | None = None,
        notifier: Notifier | None = None,
        on_render: Optional[Callable[[ChatView], None]] = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.user_id = user_id
        self.display_name = display_name
        self._messages = messages
        self._presence = presence
        self._visibility_layer = visibility
        self._chats = chats
        self.config = config or SyncConfig()
        self._notifier = notifier or NullNotifier()
        self._on_render = on_render
        self._now = now_func
        self._temp_ids = itertools.count(1)

        self.chat_id: Optional[str] = None
        self._generation = 0
        self._subs = ActiveSubscriptions()
        self._publisher: Optional[TypingPublisher] = None
        self._reset_state()

    def _reset_state(self) -> None:
        self._server_messages: List[Message] = []
        self._seen_ids: Set[str] = set()
        self._initial_loaded = False
        self._started_at = 0
        self._visibility = VisibilityState()
        self._optimistic: Dict[str, Message] = {}
        self._confirmed: Dict[str, str] = {}
        self._typing_records: List[TypingRecord] = []
        self._chat: Optional[Chat] = None
        self._muted = False

    @property
    def active(self) -> bool:
        return self.chat_id is not None

    @property
    def subscription_count(self) -> int:
        return len(self._subs)

    # -- lifecycle -----------------------------------------------------------

    async def open_direct(self, peer_id: str, peer_name: Optional[str] = None) -> ChatView:
        handle = await self._chats.get_or_create_chat(
            self.user_id, self.display_name, PeerRef(peer_id, peer_name)
        )
        return await self.switch_chat(handle.chat_id)

    async def open_group(self, chat_id: str) -> ChatView:
        handle = await self._chats.get_or_create_chat(self.user_id, self.display_name, GroupRef(chat_id))
        return await self.switch_chat(handle.chat_id)

    async def switch_chat(self, chat_id: str) -> ChatView:
        """Tear down the previous chat's feeds and establish the new chat's."""

        previous_publisher = self._teardown()
        self.chat_id = chat_id
        generation = self._generation
        self._started_at = self._now()
        if previous_publisher is not None:
            await previous_publisher.close()

        try:
            if not await self._establish(chat_id, generation):
                return self.view()
            await self.mark_read(chat_id)
        except BaseException:
            # A half-open chat would accept sends that never confirm.
            if generation == self._generation:
                publisher = self._teardown()
                if publisher is not None:
                    publisher.detach()
            raise
        return self.view()

    async def _establish(self, chat_id: str, generation: int) -> bool:
        visibility = await self._visibility_layer.get_state(chat_id, self.user_id)
        muted = await self._chats.get_mute(self.user_id, chat_id)
        if generation != self._generation:
            return False
        self._visibility = visibility
        self._muted = muted
        self._publisher = TypingPublisher(
            lambda is_typing: self._publish_typing(chat_id, generation, is_typing),
            self.config,
            now_func=self._now,
        )
        self._subs.add(self._presence.subscribe_read_state(
            chat_id,
            lambda _read_map: None,
            on_chat=lambda chat: self._on_chat(generation, chat),
        ))
        self._subs.add(self._presence.subscribe_typing(
            chat_id,
            lambda _typers: self._render_if(generation),
            exclude_user=self.user_id,
            on_records=lambda records: self._on_typing_records(generation, records),
        ))
        self._subs.add(self._messages.subscribe(
            chat_id, lambda messages: self._on_messages(generation, messages)
        ))
        return True

    async def leave(self) -> None:
        publisher = self._teardown()
        if publisher is not None:
            await publisher.close()

    def abandon(self) -> None:
        """Drop the active chat without any further writes (the identity is gone)."""

        publisher = self._teardown()
        if publisher is not None:
            publisher.detach()

    def _teardown(self) -> Optional[TypingPublisher]:
        self._subs.close()
        self._subs = ActiveSubscriptions()
        self._generation += 1
        self.chat_id = None
        publisher, self._publisher = self._publisher, None
        self._reset_state()
        return publisher

    async def settle(self) -> None:
        """Wait for background work (auto mark-read) spawned for the active chat."""

        await self._subs.settle()

    # -- feed handlers -------------------------------------------------------

    def _on_messages(self, generation: int, messages: List[Message]) -> None:
        if generation != self._generation:
            return
        novel: List[Message] = []
        if not self._initial_loaded:
            self._initial_loaded = True
            self._seen_ids.update(m.id for m in messages)
        else:
            for message in messages:
                if message.id in self._seen_ids:
                    continue
                self._seen_ids.add(message.id)
                if self._is_novel(message):
                    novel.append(message)
        self._server_messages = list(messages)
        self._drop_confirmed_optimistic()
        self._render()
        for message in novel:
            self._notify(message)
        if novel:
            self._subs.spawn(self.mark_read(self.chat_id))

    def _is_novel(self, message: Message) -> bool:
        if message.sender_id == self.user_id or message.created_at is None:
            return False
        return message.created_at > self._started_at - self.config.novelty_window_ms

    def _notify(self, message: Message) -> None:
        if not is_visible(message, self._visibility.cleared_before, self._visibility.deleted_ids):
            return
        if self.config.is_celebration(message.text):
            self._notifier.celebrate(self.chat_id, message)
        if not self._muted:
            self._notifier.play_sound(self.chat_id, message)

    def _on_chat(self, generation: int, chat: Optional[Chat]) -> None:
        if generation != self._generation:
            return
        self._chat = chat
        self._render()

    def _on_typing_records(self, generation: int, records: List[TypingRecord]) -> None:
        if generation == self._generation:
            self._typing_records = records

    def _render_if(self, generation: int) -> None:
        if generation == self._generation:
            self._render()

    # -- view ----------------------------------------------------------------

    def view(self) -> ChatView:
        visible = filter_visible(self._server_messages, self._visibility)
        pending = [m for m in self._optimistic.values()]
        return ChatView(
            chat_id=self.chat_id,
            chat=self._chat,
            messages=visible + pending,
            typers=self._presence.fresh_typers(self._typing_records, exclude_user=self.user_id),
            muted=self._muted,
        )

    def _render(self) -> None:
        if self._on_render is not None and self.chat_id is not None:
            self._on_render(self.view())

    def _drop_confirmed_optimistic(self) -> None:
        if not self._confirmed:
            return
        server_ids = {m.id for m in self._server_messages}
        for temp_id, real_id in list(self._confirmed.items()):
            if real_id in server_ids:
                self._confirmed.pop(temp_id, None)
                self._optimistic.pop(temp_id, None)

    # -- actions -------------------------------------------------------------

    def _require_active(self) -> tuple[str, int]:
        if self.chat_id is None:
            raise ValidationError("no chat is open")
        return self.chat_id, self._generation

    async def send(
        self,
        text: str,
        *,
        kind: str = "text",
        media_url: Optional[str] = None,
        reply_to: Union[Message, ReplyRef, None] = None,
    ) -> str:
        """Render the message immediately, then append it; roll back if the append fails."""

        chat_id, generation = self._require_active()
        if isinstance(reply_to, Message):
            reply_to = reply_to.reply_ref()
        draft = MessageDraft(text=text, kind=kind, media_url=media_url, reply_to=reply_to)
        draft.validate(self.user_id)

        temp_id = f"local-{self._now()}-{next(self._temp_ids)}"
        self._optimistic[temp_id] = Message(
            id=temp_id,
            sender_id=self.user_id,
            kind=kind,
            text=text,
            sender_display_name=self.display_name,
            media_url=media_url,
            reply_to=reply_to,
            pending=True,
        )
        self._render()
        if self._publisher is not None:
            self._subs.spawn(self._publisher.sent())

        try:
            message_id = await self._messages.append(
                chat_id, self.user_id, draft, sender_display_name=self.display_name
            )
        except Exception:
            if generation == self._generation:
                self._optimistic.pop(temp_id, None)
                self._render()
            logger.warning("send to chat %s failed; optimistic message rolled back", chat_id)
            raise
        if generation == self._generation and temp_id in self._optimistic:
            self._confirmed[temp_id] = message_id
            self._drop_confirmed_optimistic()
            self._render()
        return message_id

    async def send_attachment(
        self,
        filename: str,
        data: bytes,
        content_type: str,
        *,
        kind: str = "file",
        caption: str = "",
    ) -> str:
        chat_id, generation = self._require_active()
        url = await self._messages.upload_attachment(chat_id, self.user_id, filename, data, content_type)
        if generation != self._generation:
            raise ValidationError("chat changed before the attachment was sent")
        return await self.send(caption, kind=kind, media_url=url)

    async def mark_read(self, chat_id: Optional[str] = None) -> bool:
        """Mark the active chat read; a request for a chat that is no longer open does nothing."""

        target = chat_id or self.chat_id
        if target is None or target != self.chat_id:
            return False
        return await self._presence.mark_read(target, self.user_id)

    async def keystroke(self) -> None:
        if self._publisher is not None:
            await self._publisher.keystroke()

    async def _publish_typing(self, chat_id: str, generation: int, is_typing: bool) -> None:
        if is_typing and generation != self._generation:
            return
        await self._presence.set_typing(chat_id, self.user_id, self.display_name, is_typing)

    async def clear_for_me(self) -> ChatView:
        chat_id, generation = self._require_active()
        state = await self._visibility_layer.clear_chat_for_me(chat_id, self.user_id)
        if generation == self._generation:
            self._visibility = state
            self._render()
        return self.view()

    async def delete_for_me(self, message_id: str) -> ChatView:
        chat_id, generation = self._require_active()
        state = await self._visibility_layer.delete_message_for_me(chat_id, self.user_id, message_id)
        if generation == self._generation:
            self._visibility = state
            self._render()
        return self.view()

    async def delete_for_everyone(self, message_id: str) -> None:
        chat_id, _ = self._require_active()
        await self._messages.delete_for_everyone(chat_id, message_id, self.user_id)

    async def react(self, message_id: str, emoji: Optional[str]) -> bool:
        chat_id, _ = self._require_active()
        return await self._messages.react(chat_id, message_id, self.user_id, emoji)

    async def set_muted(self, muted: bool) -> None:
        chat_id, generation = self._require_active()
        await self._chats.set_mute(self.user_id, chat_id, muted)
        if generation == self._generation:
            self._muted = bool(muted)
            self._render()
