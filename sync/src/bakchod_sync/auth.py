from __future__ import annotations

from typing import Callable, List, Optional


IdentityCallback = Callable[[Optional[str]], None]


class SessionIdentity:
    """Holds the authenticated user id and notifies listeners when it changes."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        self._user_id = user_id
        self._callbacks: List[IdentityCallback] = []

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        self._set(user_id)

    def sign_out(self) -> None:
        self._set(None)

    def on_change(self, callback: IdentityCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                return

        return unsubscribe

    def _set(self, user_id: Optional[str]) -> None:
        if user_id == self._user_id:
            return
        self._user_id = user_id
        for callback in list(self._callbacks):
            callback(user_id)
