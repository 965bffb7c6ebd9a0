from __future__ import annotations


class ChatSyncError(Exception):
    """Base class for every error raised by the chat sync core."""


class ValidationError(ChatSyncError, ValueError):
    pass


class RecipientNotReady(ChatSyncError):
    """The peer has no provisioned account yet; the user should refresh status later."""

    def __init__(self, user_id: str, message: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(
            message
            or f"recipient {user_id!r} is not ready yet; ask them to sign in once, then refresh status"
        )


class PermissionDenied(ChatSyncError, PermissionError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class DocumentNotFound(ChatSyncError, LookupError):
    def __init__(self, collection: str, doc_id: str) -> None:
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection}/{doc_id} not found")


class PreconditionFailed(ChatSyncError):
    """A conditional update saw field values other than the expected ones."""

    def __init__(self, collection: str, doc_id: str, field: str) -> None:
        self.collection = collection
        self.doc_id = doc_id
        self.field = field
        super().__init__(f"{collection}/{doc_id}: precondition on {field!r} failed")
