from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import PROFILES, USERS, contacts_path
from .store import SERVER_TIMESTAMP, DocumentStore, Filter


_NON_DIGITS = re.compile(r"\D")
NATIONAL_NUMBER_LENGTH = 10


def normalize_phone(raw: str | None, country_code: str = "91") -> str:
    """Canonical ``+<cc><number>`` form, or ``""`` when nothing usable is left."""

    if not raw:
        return ""
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return ""
    if len(digits) == NATIONAL_NUMBER_LENGTH:
        return f"+{country_code}{digits}"
    if len(digits) == NATIONAL_NUMBER_LENGTH + len(country_code) and digits.startswith(country_code):
        return f"+{digits}"
    stripped = raw.strip()
    if stripped.startswith("+"):
        return stripped
    return f"+{digits}"


def phone_lookup_variants(raw: str | None, country_code: str = "91") -> List[str]:
    """Every form a stored number may take, in the order lookups should try them."""

    variants: List[str] = []

    def add(value: str) -> None:
        if value and value not in variants:
            variants.append(value)

    normalized = normalize_phone(raw, country_code)
    digits = _NON_DIGITS.sub("", raw or "")
    add(normalized)
    add(digits)
    add(_NON_DIGITS.sub("", normalized))
    if len(digits) == NATIONAL_NUMBER_LENGTH:
        add(f"+{country_code}{digits}")
        add(f"{country_code}{digits}")
    if len(digits) == NATIONAL_NUMBER_LENGTH + len(country_code) and digits.startswith(country_code):
        add(f"+{digits}")
        add(digits[len(country_code):])
    return variants


@dataclass(frozen=True)
class PhoneMatch:
    matched: bool
    user_id: Optional[str] = None


NOT_MATCHED = PhoneMatch(matched=False)


@dataclass(frozen=True)
class ContactEntry:
    contact_id: str
    name: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class ContactStatus:
    contact_id: str
    name: str
    phone: str
    on_app: bool
    user_id: Optional[str] = None


class ContactDirectory:
    """Matches address-book contacts to platform users. Matching is best effort."""

    def __init__(self, store: DocumentStore, *, country_code: str = "91") -> None:
        self._store = store
        self._country_code = country_code

    def normalize(self, raw: str | None) -> str:
        return normalize_phone(raw, self._country_code)

    async def lookup_by_phone(self, raw: str | None) -> PhoneMatch:
        for value in phone_lookup_variants(raw, self._country_code):
            for collection in (USERS, PROFILES):
                docs = await self._store.query(
                    collection, [Filter("phoneNormalized", "==", value)], limit=1
                )
                if docs:
                    return PhoneMatch(matched=True, user_id=docs[0].id)
        return NOT_MATCHED

    async def ensure_profile(
        self,
        user_id: str,
        display_name: str,
        *,
        phone: str | None = None,
        avatar_url: str = "",
        preferred_language: str = "en",
    ) -> None:
        phone_normalized = self.normalize(phone)
        existing = await self._store.get_document(PROFILES, user_id)
        if existing is not None:
            if phone_normalized and existing.get("phoneNormalized") != phone_normalized:
                await self._store.update_fields(
                    PROFILES,
                    user_id,
                    {"phoneNormalized": phone_normalized, "updatedAt": SERVER_TIMESTAMP},
                )
                await self._store.set_document(
                    USERS, user_id, {"phoneNormalized": phone_normalized}, merge=True
                )
            return
        await self._store.set_document(
            PROFILES,
            user_id,
            {
                "userId": user_id,
                "displayName": display_name,
                "preferredLanguage": preferred_language,
                "avatarUrl": avatar_url,
                "phoneNormalized": phone_normalized,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        await self._store.set_document(
            USERS,
            user_id,
            {
                "displayName": display_name,
                "phoneNormalized": phone_normalized,
                "photoURL": avatar_url,
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )

    async def import_contacts(self, owner_id: str, contacts: Iterable[ContactEntry]) -> List[ContactStatus]:
        statuses: List[ContactStatus] = []
        for contact in contacts:
            phone = self.normalize(contact.phone)
            match = await self.lookup_by_phone(contact.phone) if phone else NOT_MATCHED
            if match.matched and match.user_id != owner_id:
                await self._store.set_document(
                    contacts_path(owner_id),
                    match.user_id,
                    {"name": contact.name, "matchedUserId": match.user_id, "isOnApp": True},
                    merge=True,
                )
                statuses.append(
                    ContactStatus(contact.contact_id, contact.name, phone, on_app=True, user_id=match.user_id)
                )
            else:
                statuses.append(ContactStatus(contact.contact_id, contact.name, phone, on_app=False))
        return statuses

    async def search_users(self, term: str | None, current_user_id: str) -> List[dict]:
        if not term or not term.strip():
            return []
        needle = term.strip().lower()
        results = []
        for doc in await self._store.query(USERS):
            if doc.id == current_user_id:
                continue
            name = str(doc.get("displayName") or "").lower()
            email = str(doc.get("email") or "").lower()
            if needle in name or needle in email:
                results.append({"id": doc.id, **doc.data})
        return results
