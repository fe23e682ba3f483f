"""Conversation listing, creation, deletion and search."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .errors import ValidationError
from .models import Conversation, User
from .query import KIND_CONVERSATION, KIND_USER, Query
from .session import SessionContext, call_with_recovery

logger = logging.getLogger(__name__)


def filter_conversations(conversations: Iterable[Conversation], query_text: str, current_user_id: str) -> List[Conversation]:
    """Case-insensitive substring match on the other participant's name or identifier."""

    conversations = list(conversations)
    needle = query_text.strip().lower()
    if not needle:
        return conversations
    matched = []
    for conversation in conversations:
        other = conversation.other_participant(current_user_id)
        if other is not None and needle in other.label.lower():
            matched.append(conversation)
    return matched


def filter_users(users: Iterable[User], query_text: str) -> List[User]:
    users = list(users)
    needle = query_text.strip().lower()
    if not needle:
        return users
    return [
        user
        for user in users
        if needle in (user.display_name or "").lower() or needle in user.identifier.lower()
    ]


class ChatDirectory:
    def __init__(self, context: SessionContext) -> None:
        self._context = context

    def _user_id(self, user_id: Optional[str]) -> str:
        return user_id or self._context.require_user().id

    async def list_conversations(self, current_user_id: Optional[str] = None) -> List[Conversation]:
        """Conversations containing the user, most recently updated first.

        Records that come back without the user among their participants are
        dropped here regardless of what the backend's filter claimed.
        """

        user_id = self._user_id(current_user_id)
        query = (
            Query(KIND_CONVERSATION)
            .where("participant_ids", "has", user_id)
            .include("participants", "last_message")
            .descending("updated_at_ms")
        )
        records = await call_with_recovery(self._context, lambda: self._context.backend.query(query))
        conversations = []
        for record in records:
            conversation = Conversation.from_record(record)
            if user_id not in conversation.participant_ids:
                logger.warning("discarding conversation %s: %s is not a participant", conversation.id, user_id)
                continue
            conversations.append(conversation)
        return conversations

    async def create_or_get_conversation(self, current_user_id: str, other_user_id: str) -> Conversation:
        """Return the two-party conversation for the pair, creating it when absent.

        The lookup and the create are separate backend calls, so two clients
        racing here can both create one.
        """

        if not other_user_id or other_user_id == current_user_id:
            raise ValidationError("pick another user to chat with")
        pair = {current_user_id, other_user_id}
        backend = self._context.backend
        query = (
            Query(KIND_CONVERSATION)
            .where("participant_ids", "has_all", sorted(pair))
            .include("participants", "last_message")
            .descending("updated_at_ms")
        )
        records = await call_with_recovery(self._context, lambda: backend.query(query))
        for record in records:
            conversation = Conversation.from_record(record)
            if conversation.participant_ids == pair:
                return conversation

        async def create() -> Conversation:
            saved = await backend.save(KIND_CONVERSATION, {"participant_ids": [current_user_id, other_user_id]})
            return Conversation.from_record(
                await backend.get(KIND_CONVERSATION, saved["id"], ("participants", "last_message"))
            )

        conversation = await call_with_recovery(self._context, create)
        logger.info("created conversation %s", conversation.id)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        # Messages are left behind; lookups by conversation id simply find nothing.
        await call_with_recovery(
            self._context, lambda: self._context.backend.destroy(KIND_CONVERSATION, conversation_id)
        )
        logger.info("deleted conversation %s", conversation_id)

    async def list_contacts(self) -> List[User]:
        user_id = self._context.require_user().id
        query = Query(KIND_USER).where("id", "ne", user_id).ascending("created_at_ms")
        records = await call_with_recovery(self._context, lambda: self._context.backend.query(query))
        return [User.from_record(record) for record in records]

    def filter(self, conversations: Iterable[Conversation], query_text: str) -> List[Conversation]:
        return filter_conversations(conversations, query_text, self._context.require_user().id)
