from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from .config import SyncConfig
from .errors import DocumentNotFound, PermissionDenied, PreconditionFailed, ValidationError
from .models import CALL_MODES, CALL_STATES, CALLS, CHATS, CallInvitation
from .store import SERVER_TIMESTAMP, Document, DocumentStore, Filter


logger = logging.getLogger(__name__)

_ROOM_ALPHABET = string.ascii_lowercase + string.digits

# ringing is the only state with more than one way out; accepted can only end.
TRANSITIONS = {
    "ringing": frozenset({"accepted", "declined", "cancelled"}),
    "accepted": frozenset({"ended"}),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def can_transition(current: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(current, frozenset())


def make_room_name(now_ms: int) -> str:
    suffix = "".join(secrets.choice(_ROOM_ALPHABET) for _ in range(8))
    return f"bakchod-{now_ms}-{suffix}"


@dataclass(frozen=True)
class CallHandle:
    call_id: str
    room_name: str


class CallSignaling:
    """Ringing → accepted/declined/cancelled → ended lifecycle of call invitations."""

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

    async def create_call(
        self,
        caller_id: str,
        caller_display_name: str,
        targets: Optional[Iterable[str]] = None,
        mode: str = "video",
        group_chat_id: Optional[str] = None,
    ) -> CallHandle:
        if mode not in CALL_MODES:
            raise ValidationError(f"unsupported call mode: {mode}")
        if targets is None and group_chat_id is not None:
            # Ringers are fixed to the membership at initiation time.
            chat = await self._store.get_document(CHATS, group_chat_id)
            if chat is None:
                raise DocumentNotFound(CHATS, group_chat_id)
            members = [str(uid) for uid in chat.get("participantIds", [])]
            if caller_id not in members:
                raise PermissionDenied("only group members can start a group call")
            targets = members
        target_ids = [uid for uid in dict.fromkeys(targets or []) if uid and uid != caller_id]
        if not target_ids:
            raise ValidationError("a call needs at least one target participant")

        room_name = make_room_name(self._now())
        call_id = await self._store.add_document(
            CALLS,
            {
                "fromUserId": caller_id,
                "fromDisplayName": caller_display_name or "Someone",
                "targetParticipantIds": target_ids,
                "targetChatId": group_chat_id,
                "mode": mode,
                "status": "ringing",
                "roomName": room_name,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        logger.debug("call %s ringing %d target(s)", call_id, len(target_ids))
        return CallHandle(call_id=call_id, room_name=room_name)

    async def get_call(self, call_id: str) -> Optional[CallInvitation]:
        doc = await self._store.get_document(CALLS, call_id)
        return CallInvitation.from_document(doc) if doc is not None else None

    async def update_status(
        self,
        call_id: str,
        new_status: str,
        *,
        actor_id: Optional[str] = None,
    ) -> CallInvitation:
        """Move the call forward; transitions out of a terminal state are ignored.

        The write is conditional on the status read, so when both parties
        resolve the call at once only the first transition lands.
        """

        if new_status not in CALL_STATES or new_status == "ringing":
            raise ValidationError(f"unsupported call status: {new_status}")
        call = await self.get_call(call_id)
        if call is None:
            raise DocumentNotFound(CALLS, call_id)
        if actor_id is not None:
            self._check_actor(call, new_status, actor_id)
        if not can_transition(call.status, new_status):
            logger.info("call %s: %s -> %s ignored", call_id, call.status, new_status)
            return call
        try:
            await self._store.update_fields(
                CALLS,
                call_id,
                {"status": new_status, "updatedAt": SERVER_TIMESTAMP},
                if_match={"status": call.status},
            )
        except PreconditionFailed:
            logger.info("call %s changed concurrently; %s ignored", call_id, new_status)
        latest = await self.get_call(call_id)
        return latest if latest is not None else call

    def subscribe_status(
        self,
        call_id: str,
        on_change: Callable[[Optional[CallInvitation]], None],
    ) -> Callable[[], None]:
        def deliver(doc: Optional[Document]) -> None:
            on_change(CallInvitation.from_document(doc) if doc is not None else None)

        return self._store.subscribe_document(CALLS, call_id, deliver)

    def subscribe_incoming(
        self,
        user_id: str,
        on_ringing: Callable[[List[CallInvitation]], None],
    ) -> Callable[[], None]:
        def deliver(docs: List[Document]) -> None:
            calls = [CallInvitation.from_document(doc) for doc in docs]
            on_ringing(
                [call for call in calls if call.status == "ringing" and call.from_user_id != user_id]
            )

        return self._store.subscribe(
            CALLS,
            deliver,
            filters=[
                Filter("targetParticipantIds", "array-contains", user_id),
                Filter("status", "==", "ringing"),
            ],
            limit=self.config.incoming_calls_limit,
        )

    @staticmethod
    def _check_actor(call: CallInvitation, new_status: str, actor_id: str) -> None:
        is_caller = actor_id == call.from_user_id
        is_callee = actor_id in call.target_participant_ids
        if new_status == "cancelled" and not is_caller:
            raise PermissionDenied("only the caller can cancel a ringing call")
        if new_status in ("accepted", "declined") and not is_callee:
            raise PermissionDenied("only a called participant can accept or decline")
        if new_status == "ended" and not (is_caller or is_callee):
            raise PermissionDenied("only call participants can hang up")
