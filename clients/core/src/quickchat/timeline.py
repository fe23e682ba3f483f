"""Pure helpers over an ordered message list: merging, reconciliation and day headers.

Every function returns a new list and leaves its input untouched.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, tzinfo
from typing import Iterable, List, Optional, Sequence

from .models import Message, MessageStatus


def _sorted(messages: List[Message]) -> List[Message]:
    # Stable: equal timestamps keep arrival order.
    return sorted(messages, key=lambda message: message.created_at)


def merge_messages(current: Sequence[Message], incoming: Iterable[Message]) -> List[Message]:
    """Merge confirmed messages by id; a known id is never added twice."""

    merged = list(current)
    seen = {message.id for message in merged if message.id is not None}
    for message in incoming:
        if message.id is None or message.id in seen:
            continue
        seen.add(message.id)
        merged.append(message)
    return _sorted(merged)


def insert_pending(current: Sequence[Message], pending: Message) -> List[Message]:
    return _sorted([message for message in current if message.local_id != pending.local_id] + [pending])


def reconcile(current: Sequence[Message], local_id: str, confirmed: Message) -> List[Message]:
    """Swap the pending entry for its confirmed copy.

    When the confirmed id already arrived through the feed the pending entry
    is dropped instead, so the id still appears exactly once.
    """

    confirmed = replace(confirmed, local_id=local_id, status=MessageStatus.CONFIRMED)
    return merge_messages(discard_local(current, local_id), [confirmed])


def mark_failed(current: Sequence[Message], local_id: str) -> List[Message]:
    return [
        replace(message, status=MessageStatus.FAILED)
        if message.local_id == local_id and message.id is None
        else message
        for message in current
    ]


def discard_local(current: Sequence[Message], local_id: str) -> List[Message]:
    return [message for message in current if not (message.local_id == local_id and message.id is None)]


def snapshot_differs(current: Sequence[Message], fetched: Sequence[Message]) -> bool:
    """True when a polled snapshot disagrees with the confirmed part of ``current``.

    Compared by length and by id at each position.
    """

    confirmed = [message for message in current if message.id is not None]
    if len(confirmed) != len(fetched):
        return True
    return any(mine.id != theirs.id for mine, theirs in zip(confirmed, fetched))


def _local_day(value: datetime, tz: Optional[tzinfo]) -> date:
    return value.astimezone(tz).date()


def date_header_flags(messages: Sequence[Message], tz: Optional[tzinfo] = None) -> List[bool]:
    """For each message, whether a day header precedes it.

    The first message always gets one; later ones only when their calendar
    day (in ``tz``, local time by default) differs from the previous message.
    """

    flags = []
    previous: Optional[date] = None
    for message in messages:
        day = _local_day(message.created_at, tz)
        flags.append(previous is None or day != previous)
        previous = day
    return flags


def format_time(value: datetime, tz: Optional[tzinfo] = None) -> str:
    local = value.astimezone(tz)
    hours = local.hour % 12 or 12
    suffix = "PM" if local.hour >= 12 else "AM"
    return f"{hours}:{local.minute:02d} {suffix}"


def format_day(value: datetime, *, today: Optional[date] = None, tz: Optional[tzinfo] = None) -> str:
    day = _local_day(value, tz)
    if today is None:
        today = datetime.now(tz).date() if tz is not None else datetime.now().date()
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day:%A}, {day:%B} {day.day}, {day.year}"


def is_own(message: Message, user_id: str) -> bool:
    return message.sender_id == user_id
