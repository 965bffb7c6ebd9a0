from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_CELEBRATION_TEMPLATES = ("🎉", "🥳", "party time!", "happy birthday!")


@dataclass(frozen=True)
class SyncConfig:
    typing_stale_ms: int = 5000
    typing_idle_ms: int = 3000
    typing_refresh_ms: int = 2000
    novelty_window_ms: int = 2000
    history_limit: int = 200
    country_code: str = "91"
    incoming_calls_limit: int = 10
    chat_list_limit: int = 100
    invites_limit: int = 100
    celebration_templates: tuple[str, ...] = DEFAULT_CELEBRATION_TEMPLATES

    @property
    def typing_idle_s(self) -> float:
        return max(self.typing_idle_ms, 0) / 1000

    def is_celebration(self, text: str | None) -> bool:
        return bool(text) and text in self.celebration_templates


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_digits(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    cleaned = raw.strip().lstrip("+")
    if not cleaned.isdigit() or len(cleaned) > 3:
        raise ValueError(f"{name} must be a 1-3 digit calling code")
    return cleaned


def _parse_templates(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    templates = tuple(part.strip() for part in raw.split("|") if part.strip())
    if not templates:
        raise ValueError(f"{name} must list at least one template")
    return templates


def load_sync_config_from_env() -> SyncConfig:
    defaults = SyncConfig()
    return SyncConfig(
        typing_stale_ms=_parse_non_negative_int("BAKCHOD_TYPING_STALE_MS", defaults.typing_stale_ms),
        typing_idle_ms=_parse_non_negative_int("BAKCHOD_TYPING_IDLE_MS", defaults.typing_idle_ms),
        typing_refresh_ms=_parse_non_negative_int("BAKCHOD_TYPING_REFRESH_MS", defaults.typing_refresh_ms),
        novelty_window_ms=_parse_non_negative_int("BAKCHOD_NOVELTY_WINDOW_MS", defaults.novelty_window_ms),
        history_limit=_parse_non_negative_int("BAKCHOD_HISTORY_LIMIT", defaults.history_limit),
        country_code=_parse_digits("BAKCHOD_COUNTRY_CODE", defaults.country_code),
        incoming_calls_limit=_parse_non_negative_int(
            "BAKCHOD_INCOMING_CALLS_LIMIT", defaults.incoming_calls_limit
        ),
        chat_list_limit=_parse_non_negative_int("BAKCHOD_CHAT_LIST_LIMIT", defaults.chat_list_limit),
        invites_limit=_parse_non_negative_int("BAKCHOD_INVITES_LIMIT", defaults.invites_limit),
        celebration_templates=_parse_templates(
            "BAKCHOD_CELEBRATION_TEMPLATES", defaults.celebration_templates
        ),
    )
