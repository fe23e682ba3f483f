"""Client core for a two-party chat app: sessions, directory, sync and profile."""

from .backend import Backend, ChangeEvent, Subscription
from .directory import ChatDirectory
from .errors import ChatError, SessionExpiredError
from .models import Conversation, Message, MessageStatus, User
from .profile import ProfileDraft, ProfileStore
from .query import Query
from .session import SessionContext, SessionManager, call_with_recovery
from .sync import MessageSynchronizer, SyncState

__all__ = [
    "Backend",
    "ChangeEvent",
    "ChatDirectory",
    "ChatError",
    "Conversation",
    "Message",
    "MessageStatus",
    "MessageSynchronizer",
    "ProfileDraft",
    "ProfileStore",
    "Query",
    "SessionContext",
    "SessionExpiredError",
    "SessionManager",
    "Subscription",
    "SyncState",
    "User",
    "call_with_recovery",
]
