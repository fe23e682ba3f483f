"""Change feeds for one conversation's messages: push-based or poll-based."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

from .backend import ChangeEvent, Subscription
from .errors import ChatError, RealtimeUnavailableError, TransientError
from .models import Message
from .query import KIND_MESSAGE, Query
from .session import SessionContext, call_with_recovery

logger = logging.getLogger(__name__)


class FeedSink(Protocol):
    def apply_incoming(self, messages: Sequence[Message]) -> None: ...

    def apply_snapshot(self, messages: Sequence[Message]) -> None: ...


def messages_query(conversation_id: str) -> Query:
    return (
        Query(KIND_MESSAGE)
        .where("conversation_id", "eq", conversation_id)
        .include("sender")
        .ascending("created_at_ms")
    )


async def fetch_messages(context: SessionContext, conversation_id: str) -> List[Message]:
    query = messages_query(conversation_id)
    records = await call_with_recovery(context, lambda: context.backend.query(query))
    return [Message.from_record(record) for record in records]


class ChangeFeed(abc.ABC):
    """Delivers new messages for one conversation into a sink until stopped."""

    kind = "feed"

    def __init__(self, context: SessionContext, conversation_id: str, sink: FeedSink) -> None:
        self.context = context
        self.conversation_id = conversation_id
        self.sink = sink

    @abc.abstractmethod
    async def start(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def stop(self) -> None:
        """Release the underlying resource; safe to call repeatedly."""

        raise NotImplementedError


class PushFeed(ChangeFeed):
    """Applies pushed changes; degrades to a :class:`PollingFeed` if the push channel drops."""

    def __init__(
        self, context: SessionContext, conversation_id: str, sink: FeedSink, poll_interval_s: float = 2.0
    ) -> None:
        super().__init__(context, conversation_id, sink)
        self.poll_interval_s = poll_interval_s
        self._subscription: Optional[Subscription] = None
        self._fallback: Optional[PollingFeed] = None
        self._stopped = False

    @property
    def kind(self) -> str:
        return "poll" if self._fallback is not None else "push"

    def _on_event(self, event: ChangeEvent) -> None:
        if self._stopped or event.kind != KIND_MESSAGE:
            return
        message = Message.from_record(event.record)
        if message.conversation_id != self.conversation_id:
            return
        self.sink.apply_incoming([message])

    def _on_lost(self) -> None:
        if self._stopped or self._fallback is not None:
            return
        logger.warning("push feed for %s lost, polling instead", self.conversation_id)
        self._fallback = PollingFeed(self.context, self.conversation_id, self.sink, self.poll_interval_s)
        self._fallback.spawn(immediate=True)

    async def start(self) -> None:
        query = messages_query(self.conversation_id)
        subscription = await call_with_recovery(
            self.context, lambda: self.context.backend.subscribe(query, self._on_event)
        )
        self._subscription = subscription
        subscription.on_lost = self._on_lost
        if subscription.lost:
            self._on_lost()

    async def stop(self) -> None:
        self._stopped = True
        fallback, self._fallback = self._fallback, None
        if fallback is not None:
            await fallback.stop()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()


class PollingFeed(ChangeFeed):
    """Re-fetches the whole ordered history every ``interval_s`` seconds.

    A failed cycle is logged and skipped; the next one supersedes it.
    """

    kind = "poll"

    def __init__(self, context: SessionContext, conversation_id: str, sink: FeedSink, interval_s: float) -> None:
        super().__init__(context, conversation_id, sink)
        self.interval_s = interval_s
        self._task: Optional[asyncio.Task] = None

    def spawn(self, *, immediate: bool = False) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(immediate))

    async def start(self) -> None:
        self.spawn()

    async def poll_once(self) -> None:
        try:
            messages = await fetch_messages(self.context, self.conversation_id)
        except ChatError as exc:
            logger.debug("poll for %s skipped: %s", self.conversation_id, exc.code)
            return
        self.sink.apply_snapshot(messages)

    async def _run(self, immediate: bool) -> None:
        if immediate:
            await self.poll_once()
        while True:
            await asyncio.sleep(self.interval_s)
            await self.poll_once()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def start_feed(
    context: SessionContext,
    conversation_id: str,
    sink: FeedSink,
    *,
    realtime: bool = True,
    poll_interval_s: float = 2.0,
) -> ChangeFeed:
    """Start a push feed when the backend offers one, else fall back to polling."""

    if realtime and context.backend.supports_realtime:
        feed: ChangeFeed = PushFeed(context, conversation_id, sink, poll_interval_s)
        try:
            await feed.start()
            return feed
        except (RealtimeUnavailableError, TransientError) as exc:
            logger.info("realtime unavailable for %s (%s), polling instead", conversation_id, exc.code)
            await feed.stop()
    feed = PollingFeed(context, conversation_id, sink, poll_interval_s)
    await feed.start()
    return feed
