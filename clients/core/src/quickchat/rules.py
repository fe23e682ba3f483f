"""Field validation and access rules enforced by every object store."""

from __future__ import annotations

from typing import Any, Dict, List

from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .query import KIND_CONVERSATION, KIND_MESSAGE, KIND_USER, KINDS, Lookup, Record

DEFAULT_MAX_TEXT_CHARS = 4096

WRITABLE_FIELDS = {
    KIND_USER: {"display_name", "bio", "avatar", "phone", "is_registered"},
    KIND_CONVERSATION: {"participant_ids", "last_message_id"},
    KIND_MESSAGE: {"conversation_id", "sender_id", "text"},
}
SYSTEM_FIELDS = {"id", "created_at_ms", "updated_at_ms"}


def require_kind(kind: str) -> None:
    if kind not in KINDS:
        raise NotFoundError(f"unknown kind {kind!r}")


def clean_fields(kind: str, record: Record) -> Record:
    """Strip system fields and reject anything the kind does not define."""

    require_kind(kind)
    allowed = WRITABLE_FIELDS[kind]
    fields: Dict[str, Any] = {}
    for name, value in record.items():
        if name in SYSTEM_FIELDS:
            continue
        if name not in allowed:
            raise ValidationError(f"{kind} has no writable field {name!r}")
        fields[name] = value
    return fields


def _require_participant(conversation: Record, actor_id: str) -> None:
    if actor_id not in (conversation.get("participant_ids") or []):
        raise PermissionDeniedError("not a participant of this conversation")


def _participants(value: Any, actor_id: str, lookup: Lookup) -> List[str]:
    if not isinstance(value, list) or not value or any(not isinstance(item, str) for item in value):
        raise ValidationError("participant_ids must be a non-empty list of user ids")
    unique: List[str] = []
    for user_id in value:
        if user_id not in unique:
            unique.append(user_id)
    if actor_id not in unique:
        raise PermissionDeniedError("the creator must be a participant")
    for user_id in unique:
        if lookup(KIND_USER, user_id) is None:
            raise NotFoundError(f"user {user_id} not found")
    return unique


def check_create(
    kind: str,
    fields: Record,
    actor_id: str,
    lookup: Lookup,
    *,
    max_text_chars: int = DEFAULT_MAX_TEXT_CHARS,
) -> Record:
    """Validate a new object and return the fields to persist."""

    if kind == KIND_USER:
        raise PermissionDeniedError("users are created through signup")
    if kind == KIND_CONVERSATION:
        return {
            "participant_ids": _participants(fields.get("participant_ids"), actor_id, lookup),
            "last_message_id": None,
        }

    text = fields.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("message text must not be empty")
    if len(text) > max_text_chars:
        raise ValidationError(f"message text exceeds {max_text_chars} characters")
    if fields.get("sender_id") != actor_id:
        raise PermissionDeniedError("messages can only be sent as yourself")
    conversation_id = fields.get("conversation_id")
    conversation = lookup(KIND_CONVERSATION, conversation_id) if isinstance(conversation_id, str) else None
    if conversation is None:
        raise NotFoundError("conversation not found")
    _require_participant(conversation, actor_id)
    return {"conversation_id": conversation_id, "sender_id": actor_id, "text": text}


def check_update(kind: str, existing: Record, changes: Record, actor_id: str, lookup: Lookup) -> Record:
    """Validate a partial update and return the fields to apply."""

    if kind == KIND_MESSAGE:
        raise PermissionDeniedError("messages are immutable")
    if kind == KIND_USER:
        if existing.get("id") != actor_id:
            raise PermissionDeniedError("users can only modify their own profile")
        for name in ("display_name", "bio", "phone"):
            if name in changes and changes[name] is not None and not isinstance(changes[name], str):
                raise ValidationError(f"{name} must be a string")
        if "avatar" in changes and changes["avatar"] is not None:
            avatar = changes["avatar"]
            if not isinstance(avatar, dict) or not isinstance(avatar.get("name"), str):
                raise ValidationError("avatar must be a file reference")
        if "is_registered" in changes:
            if not isinstance(changes["is_registered"], bool):
                raise ValidationError("is_registered must be a boolean")
            if existing.get("is_registered") and not changes["is_registered"]:
                raise ValidationError("registration cannot be undone")
        return dict(changes)

    _require_participant(existing, actor_id)
    if "participant_ids" in changes and changes["participant_ids"] != existing.get("participant_ids"):
        raise ValidationError("participants cannot be changed")
    applied: Record = {}
    if "last_message_id" in changes:
        message_id = changes["last_message_id"]
        if message_id is not None:
            message = lookup(KIND_MESSAGE, message_id) if isinstance(message_id, str) else None
            if message is None:
                raise NotFoundError("message not found")
            if message.get("conversation_id") != existing.get("id"):
                raise ValidationError("last message belongs to another conversation")
        applied["last_message_id"] = message_id
    return applied


def check_destroy(kind: str, existing: Record, actor_id: str) -> None:
    if kind != KIND_CONVERSATION:
        raise PermissionDeniedError(f"{kind} records cannot be deleted")
    _require_participant(existing, actor_id)


def visible_to(kind: str, record: Record, actor_id: str, lookup: Lookup) -> bool:
    if kind == KIND_USER:
        return True
    if kind == KIND_CONVERSATION:
        return actor_id in (record.get("participant_ids") or [])
    conversation_id = record.get("conversation_id")
    conversation = lookup(KIND_CONVERSATION, conversation_id) if isinstance(conversation_id, str) else None
    return conversation is not None and actor_id in (conversation.get("participant_ids") or [])
