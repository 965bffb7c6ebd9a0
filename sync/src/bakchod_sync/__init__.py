"""Real-time chat and presence synchronization core."""

from .auth import SessionIdentity
from .calls import CallHandle, CallSignaling
from .chats import ChatDirectory, ChatHandle, GroupRef, PeerRef, direct_chat_id
from .cli import main, simulate
from .client import ChatClient
from .config import SyncConfig, load_sync_config_from_env
from .contacts import ContactDirectory, normalize_phone
from .errors import (
    ChatSyncError,
    DocumentNotFound,
    PermissionDenied,
    PreconditionFailed,
    RecipientNotReady,
    ValidationError,
)
from .invites import InviteBook
from .messages import MessageDraft, MessageLog
from .presence import PresenceTracker, TypingPublisher
from .reconciler import ChatView, ChatViewReconciler
from .roast import RoastService
from .sqlite_store import SQLiteStore
from .store import InMemoryStore
from .visibility import VisibilityLayer, is_visible

__all__ = [
    "CallHandle",
    "CallSignaling",
    "ChatClient",
    "ChatDirectory",
    "ChatHandle",
    "ChatSyncError",
    "ChatView",
    "ChatViewReconciler",
    "ContactDirectory",
    "DocumentNotFound",
    "GroupRef",
    "InMemoryStore",
    "InviteBook",
    "MessageDraft",
    "MessageLog",
    "PeerRef",
    "PermissionDenied",
    "PreconditionFailed",
    "PresenceTracker",
    "RecipientNotReady",
    "RoastService",
    "SQLiteStore",
    "SessionIdentity",
    "SyncConfig",
    "TypingPublisher",
    "ValidationError",
    "VisibilityLayer",
    "direct_chat_id",
    "is_visible",
    "load_sync_config_from_env",
    "main",
    "normalize_phone",
    "simulate",
]
