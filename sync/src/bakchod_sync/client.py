from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Optional

from .auth import SessionIdentity
from .calls import CallHandle, CallSignaling
from .chats import ChatDirectory
from .config import SyncConfig
from .contacts import ContactDirectory
from .errors import ValidationError
from .invites import InviteBook
from .messages import MessageLog
from .models import CallInvitation
from .presence import PresenceTracker
from .reconciler import ChatView, ChatViewReconciler, Notifier
from .roast import RoastService, TextGenerator
from .store import DocumentStore
from .visibility import VisibilityLayer


logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatClient:
    """One signed-in user's view of the system.

    Owns the components built over a shared store, the incoming-call feed for
    whoever is signed in, and a single reconciler for the open chat. Signing
    out or switching accounts drops both without writing as the old user.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        identity: SessionIdentity | None = None,
        blobs=None,
        text_generator: TextGenerator | None = None,
        config: SyncConfig | None = None,
        notifier: Notifier | None = None,
        on_render: Optional[Callable[[ChatView], None]] = None,
        on_incoming_calls: Optional[Callable[[List[CallInvitation]], None]] = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.identity = identity or SessionIdentity()
        self.config = config or SyncConfig()
        self._now = now_func
        self._notifier = notifier
        self._on_render = on_render
        self._on_incoming_calls = on_incoming_calls

        self.contacts = ContactDirectory(store, country_code=self.config.country_code)
        self.chats = ChatDirectory(store, blobs=blobs, config=self.config, now_func=now_func)
        self.messages = MessageLog(store, blobs=blobs, config=self.config, now_func=now_func)
        self.presence = PresenceTracker(store, self.config, now_func=now_func)
        self.visibility = VisibilityLayer(store)
        self.calls = CallSignaling(store, self.config, now_func=now_func)
        self.invites = InviteBook(store, self.config)
        self.roast = RoastService(text_generator, self.messages)

        self.display_name: Optional[str] = None
        self.incoming_calls: List[CallInvitation] = []
        self._reconciler: Optional[ChatViewReconciler] = None
        self._unsubscribe_calls: Optional[Callable[[], None]] = None
        self._unsubscribe_identity = self.identity.on_change(self._on_identity_change)
        self._bind(self.identity.current_user_id())

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.current_user_id()

    def _require_user(self) -> str:
        user_id = self.user_id
        if not user_id:
            raise ValidationError("not signed in")
        return user_id

    async def sign_in(
        self,
        user_id: str,
        display_name: str,
        *,
        phone: Optional[str] = None,
        avatar_url: str = "",
    ) -> None:
        """Provision the user's profile, then make it the active identity."""

        await self.contacts.ensure_profile(user_id, display_name, phone=phone, avatar_url=avatar_url)
        self.display_name = display_name
        self.identity.sign_in(user_id)

    def sign_out(self) -> None:
        self.identity.sign_out()
        self.display_name = None

    def _on_identity_change(self, user_id: Optional[str]) -> None:
        if self._reconciler is not None:
            self._reconciler.abandon()
            self._reconciler = None
        self._bind(user_id)

    def _bind(self, user_id: Optional[str]) -> None:
        if self._unsubscribe_calls is not None:
            self._unsubscribe_calls()
            self._unsubscribe_calls = None
        self.incoming_calls = []
        if user_id:
            self._unsubscribe_calls = self.calls.subscribe_incoming(user_id, self._deliver_incoming)
            logger.debug("incoming calls bound to %s", user_id)

    def _deliver_incoming(self, calls: List[CallInvitation]) -> None:
        self.incoming_calls = calls
        if self._on_incoming_calls is not None:
            self._on_incoming_calls(calls)

    def chat_view(self) -> ChatViewReconciler:
        user_id = self._require_user()
        if self._reconciler is None:
            self._reconciler = ChatViewReconciler(
                user_id,
                self.display_name or user_id,
                messages=self.messages,
                presence=self.presence,
                visibility=self.visibility,
                chats=self.chats,
                config=self.config,
                notifier=self._notifier,
                on_render=self._on_render,
                now_func=self._now,
            )
        return self._reconciler

    async def open_direct(self, peer_id: str, peer_name: Optional[str] = None) -> ChatView:
        return await self.chat_view().open_direct(peer_id, peer_name)

    async def open_group(self, chat_id: str) -> ChatView:
        return await self.chat_view().open_group(chat_id)

    async def create_group(self, name: str, member_ids: Iterable[str]) -> str:
        user_id = self._require_user()
        chat = await self.chats.create_group(user_id, self.display_name or user_id, name, list(member_ids))
        return chat.id

    async def start_call(
        self,
        targets: Optional[Iterable[str]] = None,
        *,
        mode: str = "video",
        group_chat_id: Optional[str] = None,
    ) -> CallHandle:
        user_id = self._require_user()
        return await self.calls.create_call(
            user_id, self.display_name or user_id, targets, mode=mode, group_chat_id=group_chat_id
        )

    async def respond_to_call(self, call_id: str, status: str) -> CallInvitation:
        return await self.calls.update_status(call_id, status, actor_id=self._require_user())

    async def close(self) -> None:
        if self._reconciler is not None:
            await self._reconciler.leave()
            self._reconciler = None
        if self._unsubscribe_calls is not None:
            self._unsubscribe_calls()
            self._unsubscribe_calls = None
        self._unsubscribe_identity()
