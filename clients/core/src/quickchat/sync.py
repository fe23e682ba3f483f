"""Per-conversation message synchronizer.

States run ``IDLE -> LOADING -> LIVE -> CLOSED`` with ``LOADING -> FAILED``
when the initial history fetch cannot be completed. Every asynchronous
result is checked against a generation counter before it is applied, so a
``close()`` (or an ``open()`` of another conversation) issued while a fetch
is still in flight wins.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from enum import Enum
from typing import Callable, List, Optional, Sequence

from . import timeline
from .errors import ChatError, NotFoundError, ValidationError
from .feeds import ChangeFeed, fetch_messages, start_feed
from .models import Message, MessageStatus, now_utc
from .query import KIND_CONVERSATION, KIND_MESSAGE
from .session import SessionContext, call_with_recovery

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    FAILED = "failed"
    CLOSED = "closed"


ChangeListener = Callable[[List[Message]], None]


class MessageSynchronizer:
    def __init__(
        self,
        context: SessionContext,
        *,
        realtime: bool = True,
        poll_interval_s: float = 2.0,
        on_change: Optional[ChangeListener] = None,
    ) -> None:
        self._context = context
        self._realtime = realtime
        self._poll_interval_s = poll_interval_s
        self._on_change = on_change
        self._messages: List[Message] = []
        self._feed: Optional[ChangeFeed] = None
        self._generation = 0
        self.state = SyncState.IDLE
        self.conversation_id: Optional[str] = None
        self.draft = ""

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def feed_kind(self) -> Optional[str]:
        return self._feed.kind if self._feed is not None else None

    def _set_messages(self, messages: List[Message]) -> None:
        if messages == self._messages:
            return
        self._messages = messages
        if self._on_change is not None:
            self._on_change(list(messages))

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self.state in (SyncState.LOADING, SyncState.LIVE)

    async def open(self, conversation_id: str) -> None:
        await self.close()
        self._generation += 1
        generation = self._generation
        self.conversation_id = conversation_id
        self._messages = []
        self.state = SyncState.LOADING

        try:
            history = await fetch_messages(self._context, conversation_id)
        except ChatError as exc:
            if generation != self._generation:
                return
            self.state = SyncState.FAILED
            logger.warning("loading %s failed: %s", conversation_id, exc.code)
            raise
        if not self._is_current(generation):
            return
        self._set_messages(timeline.merge_messages(self._messages, history))

        try:
            feed = await start_feed(
                self._context,
                conversation_id,
                self,
                realtime=self._realtime,
                poll_interval_s=self._poll_interval_s,
            )
        except ChatError as exc:
            if generation != self._generation:
                return
            self.state = SyncState.FAILED
            logger.warning("feed for %s failed to start: %s", conversation_id, exc.code)
            raise
        if not self._is_current(generation):
            await feed.stop()
            return
        self._feed = feed
        self.state = SyncState.LIVE
        logger.info("conversation %s live via %s feed (%d messages)", conversation_id, feed.kind, len(self._messages))

    async def close(self) -> None:
        self._generation += 1
        if self.state in (SyncState.LOADING, SyncState.LIVE):
            self.state = SyncState.CLOSED
        feed, self._feed = self._feed, None
        if feed is not None:
            await feed.stop()

    # FeedSink

    def apply_incoming(self, messages: Sequence[Message]) -> None:
        if self.state is not SyncState.LIVE:
            return
        self._set_messages(
            timeline.merge_messages(
                self._messages,
                (message for message in messages if message.conversation_id == self.conversation_id),
            )
        )

    def apply_snapshot(self, messages: Sequence[Message]) -> None:
        if self.state is not SyncState.LIVE:
            return
        if not timeline.snapshot_differs(self._messages, messages):
            logger.debug("poll for %s unchanged", self.conversation_id)
            return
        self.apply_incoming(messages)

    # sending

    def _tracks(self, conversation_id: str) -> bool:
        return conversation_id == self.conversation_id and self.state in (SyncState.LOADING, SyncState.LIVE)

    async def send(self, conversation_id: str, sender_id: str, text: str) -> Optional[Message]:
        """Persist ``text`` and return the confirmed message.

        Blank text is ignored without touching the backend. A conversation
        that no longer exists raises :class:`NotFoundError` before anything is
        queued locally.
        """

        if not text or not text.strip():
            return None
        backend = self._context.backend
        await call_with_recovery(self._context, lambda: backend.get(KIND_CONVERSATION, conversation_id))

        pending = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            text=text,
            created_at=now_utc(),
            sender=self._context.user,
            status=MessageStatus.PENDING,
            local_id=uuid.uuid4().hex,
        )
        if self._tracks(conversation_id):
            self._set_messages(timeline.insert_pending(self._messages, pending))
        confirmed = await self._deliver(pending)
        if conversation_id == self.conversation_id:
            self.draft = ""
        return confirmed

    async def send_draft(self) -> Optional[Message]:
        if self.conversation_id is None:
            raise ValidationError("no conversation is open")
        return await self.send(self.conversation_id, self._context.require_user().id, self.draft)

    async def retry(self, local_id: str) -> Message:
        """Re-send a message that previously ended in ``FAILED``."""

        for message in self._messages:
            if message.local_id == local_id and message.status is MessageStatus.FAILED:
                break
        else:
            raise NotFoundError("no failed message with that id")
        pending = replace(message, status=MessageStatus.PENDING)
        self._set_messages(timeline.insert_pending(self._messages, pending))
        return await self._deliver(pending)

    async def _deliver(self, pending: Message) -> Message:
        backend = self._context.backend
        local_id = pending.local_id or ""
        try:
            record = await call_with_recovery(
                self._context,
                lambda: backend.save(
                    KIND_MESSAGE,
                    {"conversation_id": pending.conversation_id, "sender_id": pending.sender_id, "text": pending.text},
                ),
            )
        except NotFoundError:
            self._set_messages(timeline.discard_local(self._messages, local_id))
            raise
        except ChatError:
            self._set_messages(timeline.mark_failed(self._messages, local_id))
            raise

        confirmed = replace(Message.from_record(record), sender=pending.sender)
        try:
            await call_with_recovery(
                self._context,
                lambda: backend.save(KIND_CONVERSATION, {"id": pending.conversation_id, "last_message_id": confirmed.id}),
            )
        except ChatError as exc:
            logger.warning("message %s sent but last-message pointer not updated: %s", confirmed.id, exc.code)

        if self._tracks(pending.conversation_id):
            self._set_messages(timeline.reconcile(self._messages, local_id, confirmed))
        return confirmed

    def date_headers(self, tz=None) -> List[bool]:
        return timeline.date_header_flags(self._messages, tz)
