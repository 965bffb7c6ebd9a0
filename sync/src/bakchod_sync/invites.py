from __future__ import annotations

import re
from typing import Callable, List

from .config import SyncConfig
from .errors import DocumentNotFound, ValidationError
from .models import INVITE_STATES, INVITE_TARGET_TYPES, INVITES, Invite
from .store import SERVER_TIMESTAMP, Document, DocumentStore, Filter, OrderBy


_PHONE_INPUT = re.compile(r"^[0-9+()\-\s]{6,20}$")


class InviteBook:
    def __init__(self, store: DocumentStore, config: SyncConfig | None = None) -> None:
        self._store = store
        self.config = config or SyncConfig()

    async def create_invite(self, inviter_id: str, target_type: str, target_value: str, note: str = "") -> str:
        if target_type not in INVITE_TARGET_TYPES:
            raise ValidationError(f"unsupported invite target type: {target_type}")
        value = (target_value or "").strip()
        if not value:
            raise ValidationError("please enter a user id or phone number")
        if target_type == "phone" and not _PHONE_INPUT.match(value):
            raise ValidationError("enter a valid phone number")
        if target_type == "userId" and value == inviter_id:
            raise ValidationError("cannot invite yourself")
        return await self._store.add_document(
            INVITES,
            {
                "inviterUserId": inviter_id,
                "targetType": target_type,
                "targetValue": value,
                "note": (note or "").strip(),
                "status": "pending",
                "createdAt": SERVER_TIMESTAMP,
            },
        )

    def _pending_filters(self, user_id: str) -> List[Filter]:
        return [
            Filter("targetType", "==", "userId"),
            Filter("targetValue", "==", user_id),
            Filter("status", "==", "pending"),
        ]

    async def list_pending(self, user_id: str) -> List[Invite]:
        docs = await self._store.query(
            INVITES,
            self._pending_filters(user_id),
            order_by=OrderBy("createdAt", descending=True),
            limit=self.config.invites_limit,
        )
        return [Invite.from_document(doc) for doc in docs]

    async def update_status(self, invite_id: str, status: str) -> None:
        if status not in INVITE_STATES or status == "pending":
            raise ValidationError(f"unsupported invite status: {status}")
        if await self._store.get_document(INVITES, invite_id) is None:
            raise DocumentNotFound(INVITES, invite_id)
        await self._store.update_fields(INVITES, invite_id, {"status": status})

    def subscribe_invites(self, user_id: str, callback: Callable[[List[Invite]], None]) -> Callable[[], None]:
        def deliver(docs: List[Document]) -> None:
            callback([Invite.from_document(doc) for doc in docs])

        return self._store.subscribe(
            INVITES,
            deliver,
            filters=self._pending_filters(user_id),
            order_by=OrderBy("createdAt", descending=True),
            limit=self.config.invites_limit,
        )
