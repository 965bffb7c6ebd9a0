from __future__ import annotations

import re
from typing import Dict, Optional

import aiohttp


_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9._-]")
MAX_FILENAME_LENGTH = 80


def safe_filename(name: str | None) -> str:
    cleaned = _UNSAFE_NAME.sub("_", name or "")[:MAX_FILENAME_LENGTH]
    return cleaned or "file"


def chat_media_path(chat_id: str, user_id: str, filename: str | None, now_ms: int) -> str:
    return f"chatMedia/{chat_id}/{user_id}_{now_ms}_{safe_filename(filename)}"


def group_avatar_path(chat_id: str, filename: str | None, now_ms: int) -> str:
    ext = (filename or "").rsplit(".", 1)[-1] if filename and "." in filename else "jpg"
    return f"groups/{chat_id}/avatar_{now_ms}.{safe_filename(ext)}"


class InMemoryBlobStore:
    """Keeps uploaded objects in a dict and hands out URLs under ``base_url``."""

    def __init__(self, base_url: str = "memory://blobs") -> None:
        self._base_url = base_url.rstrip("/")
        self.objects: Dict[str, tuple[bytes, str]] = {}

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.objects[path] = (bytes(data), content_type)
        return f"{self._base_url}/{path}"


class HttpBlobStore:
    """Uploads objects with ``PUT <base_url>/<path>`` and returns the object URL."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        auth_token: Optional[str] = None,
        timeout_s: float = 30,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._auth_token = auth_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        url = f"{self._base_url}/{path}"
        headers = {"Content-Type": content_type or "application/octet-stream"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        if self._session is not None:
            return await self._put(self._session, url, data, headers)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            return await self._put(session, url, data, headers)

    async def _put(self, session: aiohttp.ClientSession, url: str, data: bytes, headers: Dict[str, str]) -> str:
        async with session.put(url, data=data, headers=headers, timeout=self._timeout) as resp:
            resp.raise_for_status()
            body = None
            if resp.content_type == "application/json":
                body = await resp.json()
        if isinstance(body, dict) and isinstance(body.get("url"), str) and body["url"]:
            return body["url"]
        return url
