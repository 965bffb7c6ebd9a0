from __future__ import annotations

from typing import List, Tuple

from bakchod_sync.models import Message
from bakchod_sync.store import InMemoryStore


class FakeClock:
    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class RecordingNotifier:
    def __init__(self) -> None:
        self.sounds: List[Tuple[str, str]] = []
        self.celebrations: List[Tuple[str, str]] = []

    def play_sound(self, chat_id: str, message: Message) -> None:
        self.sounds.append((chat_id, message.id))

    def celebrate(self, chat_id: str, message: Message) -> None:
        self.celebrations.append((chat_id, message.id))


async def provision(store: InMemoryStore, user_id: str, display_name: str | None = None, phone: str = "") -> None:
    await store.set_document(
        "users",
        user_id,
        {"displayName": display_name or user_id, "phoneNormalized": phone},
    )
