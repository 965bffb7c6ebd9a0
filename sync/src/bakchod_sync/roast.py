from __future__ import annotations

import hashlib
import logging
from typing import Optional, Protocol

import aiohttp

from .errors import ValidationError
from .messages import MessageDraft, MessageLog
from .models import ROAST_BOT_ID, ROAST_BOT_NAME


logger = logging.getLogger(__name__)

FALLBACK_ROASTS = (
    "Bro, even your Wi-Fi buffers with you. 📶💀",
    "Scene set hai, but tu offline hi lagta hai. 😎📵",
    "Your vibe is on airplane mode, beta. ✈️😶",
    "Itni bakchodi? CPU bhi garam ho gaya. 🔥🖥️",
    "Tu late night legend nahi, late night loading hai. ⏳😂",
    "Roast nahi, full fry mode activated. 🍳😈",
    "Tera swag low battery pe hai. 🔋😅",
    "Bhai, tera status: buffering... 😂",
    "Influencer nahi, inbox sufferer. 📥💔",
    "Hinglish me kahu? Beta, chill kar. 🧊😏",
)


def fallback_roast(context: str) -> str:
    """Offline roast picked by hashing the context; the same context always gets the same line."""

    digest = hashlib.sha256(context.encode("utf-8")).digest()
    return FALLBACK_ROASTS[int.from_bytes(digest[:8], "big") % len(FALLBACK_ROASTS)]


class TextGenerator(Protocol):
    async def generate(self, context: str) -> str: ...


class HttpTextGenerator:
    """POSTs ``{"context": ...}`` to a generation endpoint and reads ``{"text": ...}``."""

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 10,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def generate(self, context: str) -> str:
        headers = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._session is not None:
            return await self._post(self._session, context, headers)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            return await self._post(session, context, headers)

    async def _post(self, session: aiohttp.ClientSession, context: str, headers: dict) -> str:
        async with session.post(
            self._url, json={"context": context}, headers=headers, timeout=self._timeout
        ) as resp:
            resp.raise_for_status()
            body = await resp.json()
        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise ValueError("generation response has no text")
        return text


class RoastService:
    def __init__(self, generator: Optional[TextGenerator], messages: Optional[MessageLog] = None) -> None:
        self._generator = generator
        self._messages = messages

    async def generate(self, context: str) -> str:
        if self._generator is None:
            return fallback_roast(context)
        try:
            text = (await self._generator.generate(context)).strip()
        except Exception:
            logger.warning("roast generation failed; using offline fallback", exc_info=True)
            return fallback_roast(context)
        return text or fallback_roast(context)

    async def post_roast(self, chat_id: str, topic: str) -> str:
        """Generate a roast for ``topic`` and post it to the chat as the roast bot."""

        if self._messages is None:
            raise RuntimeError("RoastService was built without a message log")
        if not topic or not topic.strip():
            raise ValidationError("roast topic is required")
        text = await self.generate(topic.strip())
        return await self._messages.append(
            chat_id,
            ROAST_BOT_ID,
            MessageDraft(text=text, kind="roast"),
            sender_display_name=ROAST_BOT_NAME,
        )
