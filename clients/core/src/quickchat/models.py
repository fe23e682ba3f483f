from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .query import Record


def from_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value or 0) / 1000, tz=timezone.utc)


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """Identifier/secret pair kept on the device for silent re-authentication."""

    identifier: str
    secret: str

    def to_json(self) -> str:
        return json.dumps({"identifier": self.identifier, "secret": self.secret}, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> Optional["Credential"]:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        identifier = data.get("identifier")
        secret = data.get("secret")
        if not isinstance(identifier, str) or not isinstance(secret, str) or not identifier or not secret:
            return None
        return cls(identifier=identifier, secret=secret)


@dataclass(frozen=True)
class FileRef:
    name: str
    url: str

    def to_record(self) -> Dict[str, str]:
        return {"name": self.name, "url": self.url}

    @classmethod
    def from_record(cls, value: Any) -> Optional["FileRef"]:
        if not isinstance(value, dict):
            return None
        name = value.get("name")
        url = value.get("url")
        if not isinstance(name, str) or not isinstance(url, str):
            return None
        return cls(name=name, url=url)


@dataclass(frozen=True)
class User:
    id: str
    identifier: str
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[FileRef] = None
    phone: Optional[str] = None
    is_registered: bool = False

    @property
    def label(self) -> str:
        return self.display_name or self.identifier

    @property
    def avatar_url(self) -> Optional[str]:
        return self.avatar.url if self.avatar is not None else None

    @classmethod
    def from_record(cls, record: Record) -> "User":
        return cls(
            id=str(record["id"]),
            identifier=str(record.get("identifier") or ""),
            display_name=record.get("display_name") or None,
            bio=record.get("bio") or None,
            avatar=FileRef.from_record(record.get("avatar")),
            phone=record.get("phone") or None,
            is_registered=bool(record.get("is_registered", False)),
        )


class MessageStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class Message:
    conversation_id: str
    sender_id: str
    text: str
    created_at: datetime
    id: Optional[str] = None
    sender: Optional[User] = None
    status: MessageStatus = MessageStatus.CONFIRMED
    local_id: Optional[str] = None

    @property
    def key(self) -> str:
        """Stable identity for rendering: server id once known, local id before."""

        return self.id or f"local:{self.local_id}"

    @property
    def confirmed(self) -> bool:
        return self.id is not None and self.status is MessageStatus.CONFIRMED

    @classmethod
    def from_record(cls, record: Record) -> "Message":
        sender = record.get("sender")
        return cls(
            id=str(record["id"]),
            conversation_id=str(record.get("conversation_id") or ""),
            sender_id=str(record.get("sender_id") or ""),
            text=str(record.get("text") or ""),
            created_at=from_ms(record.get("created_at_ms")),
            sender=User.from_record(sender) if isinstance(sender, dict) else None,
        )


@dataclass(frozen=True)
class Conversation:
    id: str
    participant_ids: FrozenSet[str]
    updated_at: datetime
    last_message_id: Optional[str] = None
    participants: Tuple[User, ...] = field(default=())
    last_message: Optional[Message] = None

    def other_participant(self, user_id: str) -> Optional[User]:
        for participant in self.participants:
            if participant.id != user_id:
                return participant
        return None

    def title(self, user_id: str) -> str:
        other = self.other_participant(user_id)
        if other is not None:
            return other.label
        return f"Chat {self.id[-6:]}"

    def preview(self) -> str:
        if self.last_message is None:
            return "No messages yet"
        return self.last_message.text

    @classmethod
    def from_record(cls, record: Record) -> "Conversation":
        participants = record.get("participants")
        last_message = record.get("last_message")
        return cls(
            id=str(record["id"]),
            participant_ids=frozenset(str(pid) for pid in record.get("participant_ids") or []),
            updated_at=from_ms(record.get("updated_at_ms")),
            last_message_id=record.get("last_message_id") or None,
            participants=tuple(
                User.from_record(item) for item in participants or [] if isinstance(item, dict)
            ),
            last_message=Message.from_record(last_message) if isinstance(last_message, dict) else None,
        )
