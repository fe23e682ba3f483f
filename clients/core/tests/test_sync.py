import asyncio
import unittest

from quickchat.directory import ChatDirectory
from quickchat.errors import NotFoundError, PermissionDeniedError, TransientError
from quickchat.feeds import PollingFeed
from quickchat.kv_store import MemoryKeyValueStore
from quickchat.memory_backend import MemoryBackend, MemoryStore
from quickchat.models import MessageStatus
from quickchat.query import KIND_MESSAGE
from quickchat.session import SessionContext, SessionManager
from quickchat.sync import MessageSynchronizer, SyncState


class RecordingBackend(MemoryBackend):
    def __init__(self, store, *, realtime=True):
        super().__init__(store, realtime=realtime)
        self.calls = []
        self.fail_message_saves = 0
        self.fail_subscribe = None
        self.block_queries = None
        self.subscriptions = []

    async def query(self, query):
        self.calls.append(("query", query.kind))
        if self.block_queries is not None:
            await self.block_queries.wait()
        return await super().query(query)

    async def get(self, kind, object_id, includes=()):
        self.calls.append(("get", kind))
        return await super().get(kind, object_id, includes)

    async def subscribe(self, query, callback):
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        subscription = await super().subscribe(query, callback)
        self.subscriptions.append(subscription)
        return subscription

    async def save(self, kind, record):
        self.calls.append(("save", kind))
        if kind == KIND_MESSAGE and self.fail_message_saves:
            self.fail_message_saves -= 1
            raise TransientError("backend unavailable")
        return await super().save(kind, record)


async def _context(store, identifier, *, realtime=True):
    backend = RecordingBackend(store, realtime=realtime)
    user = await backend.signup(identifier, "1234", {"display_name": identifier})
    sessions = SessionManager(backend, MemoryKeyValueStore())
    sessions.save_session(identifier, "1234")
    return SessionContext(backend=backend, sessions=sessions, user=user)


class MessageSynchronizerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = MemoryStore()
        self.alice = await _context(self.store, "+15550001")
        self.bob = await _context(self.store, "+15550002")
        self.conversation = await ChatDirectory(self.alice).create_or_get_conversation(
            self.alice.user.id, self.bob.user.id
        )
        self.syncs = []

    async def asyncTearDown(self):
        for sync in self.syncs:
            await sync.close()

    def _sync(self, context, **kwargs):
        sync = MessageSynchronizer(context, **kwargs)
        self.syncs.append(sync)
        return sync

    async def test_end_to_end_send_open_delete(self):
        alice_sync = self._sync(self.alice)
        await alice_sync.open(self.conversation.id)

        sent = await alice_sync.send(self.conversation.id, self.alice.user.id, "hello")
        self.assertEqual([(m.sender_id, m.text) for m in alice_sync.messages], [(self.alice.user.id, "hello")])
        stored = self.store.get("Conversation", self.conversation.id, self.alice.user.id)
        self.assertEqual(stored["last_message_id"], sent.id)

        bob_sync = self._sync(self.bob)
        await bob_sync.open(self.conversation.id)
        self.assertEqual([m.id for m in bob_sync.messages], [sent.id])
        self.assertEqual(bob_sync.messages[0].sender.identifier, "+15550001")

        await ChatDirectory(self.alice).delete_conversation(self.conversation.id)
        with self.assertRaises(NotFoundError):
            await alice_sync.send(self.conversation.id, self.alice.user.id, "hi again")
        self.assertEqual([m.id for m in alice_sync.messages], [sent.id])

    async def test_whitespace_send_is_a_noop(self):
        sync = self._sync(self.alice)
        await sync.open(self.conversation.id)
        before = list(self.alice.backend.calls)

        self.assertIsNone(await sync.send(self.conversation.id, self.alice.user.id, "   "))
        self.assertEqual(self.alice.backend.calls, before)
        self.assertEqual(sync.messages, [])

    async def test_push_feed_merges_other_party_messages_once(self):
        sync = self._sync(self.alice)
        seen = []
        sync._on_change = seen.append
        await sync.open(self.conversation.id)
        self.assertEqual(sync.feed_kind, "push")
        self.assertIs(sync.state, SyncState.LIVE)

        bob_sync = self._sync(self.bob, realtime=False)
        message = await bob_sync.send(self.conversation.id, self.bob.user.id, "hey")
        self.assertEqual([m.id for m in sync.messages], [message.id])

        sync.apply_incoming([message, message])
        self.assertEqual([m.id for m in sync.messages], [message.id])
        self.assertEqual(len(seen), 1)

    async def test_own_send_appears_once_even_when_push_arrives_first(self):
        sync = self._sync(self.alice)
        await sync.open(self.conversation.id)
        message = await sync.send(self.conversation.id, self.alice.user.id, "mine")

        self.assertEqual([m.id for m in sync.messages], [message.id])
        self.assertIs(sync.messages[0].status, MessageStatus.CONFIRMED)
        self.assertEqual(sync.draft, "")

    async def test_polling_fallback_applies_only_changed_snapshots(self):
        sync = self._sync(self.alice, realtime=True, poll_interval_s=3600)
        self.alice.backend.supports_realtime = False
        changes = []
        sync._on_change = changes.append
        await sync.open(self.conversation.id)
        self.assertEqual(sync.feed_kind, "poll")
        feed = sync._feed
        self.assertIsInstance(feed, PollingFeed)

        await feed.poll_once()
        self.assertEqual(changes, [])

        bob_sync = self._sync(self.bob, realtime=False)
        first = await bob_sync.send(self.conversation.id, self.bob.user.id, "one")
        await feed.poll_once()
        self.assertEqual([m.id for m in sync.messages], [first.id])
        self.assertEqual(len(changes), 1)

        await feed.poll_once()
        self.assertEqual(len(changes), 1)

    async def test_feed_start_failure_ends_in_failed_state(self):
        sync = self._sync(self.alice)
        self.alice.backend.fail_subscribe = PermissionDeniedError("no push for you")

        with self.assertRaises(PermissionDeniedError):
            await sync.open(self.conversation.id)
        self.assertIs(sync.state, SyncState.FAILED)
        self.assertIsNone(sync.feed_kind)

    async def test_dropped_push_channel_switches_to_polling(self):
        sync = self._sync(self.alice, poll_interval_s=3600)
        await sync.open(self.conversation.id)
        bob_sync = self._sync(self.bob, realtime=False)
        [subscription] = self.alice.backend.subscriptions
        await subscription.unsubscribe()
        missed = await bob_sync.send(self.conversation.id, self.bob.user.id, "while offline")

        subscription._mark_lost()
        self.assertEqual(sync.feed_kind, "poll")
        for _ in range(50):
            if sync.messages:
                break
            await asyncio.sleep(0.01)
        self.assertEqual([m.id for m in sync.messages], [missed.id])
        self.assertIs(sync.state, SyncState.LIVE)

    async def test_sending_elsewhere_keeps_the_draft(self):
        carol = await _context(self.store, "+15550003")
        other = await ChatDirectory(self.alice).create_or_get_conversation(self.alice.user.id, carol.user.id)
        sync = self._sync(self.alice)
        await sync.open(self.conversation.id)
        sync.draft = "half typed"

        await sync.send(other.id, self.alice.user.id, "quick note")
        self.assertEqual(sync.draft, "half typed")

        await sync.send_draft()
        self.assertEqual(sync.draft, "")
        self.assertEqual([m.text for m in sync.messages], ["half typed"])

    async def test_poll_failure_skips_cycle(self):
        sync = self._sync(self.alice, realtime=False, poll_interval_s=3600)
        await sync.open(self.conversation.id)
        self.store.invalidate_sessions()
        self.alice.sessions.clear_session()

        await sync._feed.poll_once()
        self.assertIs(sync.state, SyncState.LIVE)

    async def test_close_during_pending_open_discards_result(self):
        sync = self._sync(self.alice)
        gate = asyncio.Event()
        self.alice.backend.block_queries = gate
        opening = asyncio.create_task(sync.open(self.conversation.id))
        await asyncio.sleep(0)

        await sync.close()
        gate.set()
        await opening

        self.assertIs(sync.state, SyncState.CLOSED)
        self.assertIsNone(sync.feed_kind)
        self.assertEqual(self.store._listeners, [])

    async def test_close_is_idempotent_and_releases_subscription(self):
        sync = self._sync(self.alice)
        await sync.open(self.conversation.id)
        self.assertEqual(len(self.store._listeners), 1)

        await sync.close()
        await sync.close()
        self.assertEqual(self.store._listeners, [])
        self.assertIs(sync.state, SyncState.CLOSED)

    async def test_opening_another_conversation_stops_previous_feed(self):
        carol = await _context(self.store, "+15550003")
        other = await ChatDirectory(self.alice).create_or_get_conversation(self.alice.user.id, carol.user.id)
        sync = self._sync(self.alice)
        await sync.open(self.conversation.id)
        await sync.open(other.id)
        self.assertEqual(len(self.store._listeners), 1)

        await self._sync(self.bob, realtime=False).send(self.conversation.id, self.bob.user.id, "stale")
        self.assertEqual(sync.messages, [])

    async def test_failed_send_is_kept_and_can_be_retried(self):
        sync = self._sync(self.alice, realtime=False, poll_interval_s=3600)
        await sync.open(self.conversation.id)
        self.alice.backend.fail_message_saves = 1

        with self.assertRaises(TransientError):
            await sync.send(self.conversation.id, self.alice.user.id, "flaky")
        [failed] = sync.messages
        self.assertIs(failed.status, MessageStatus.FAILED)
        self.assertIsNone(failed.id)

        confirmed = await sync.retry(failed.local_id)
        self.assertEqual([m.id for m in sync.messages], [confirmed.id])
        self.assertIs(sync.messages[0].status, MessageStatus.CONFIRMED)

    async def test_outsider_cannot_send(self):
        carol = await _context(self.store, "+15550003")
        sync = self._sync(carol)
        with self.assertRaises(NotFoundError):
            await sync.send(self.conversation.id, carol.user.id, "intrude")

    async def test_send_as_someone_else_is_refused(self):
        sync = self._sync(self.alice)
        await sync.open(self.conversation.id)
        with self.assertRaises(PermissionDeniedError):
            await sync.send(self.conversation.id, self.bob.user.id, "spoof")
        self.assertIs(sync.messages[0].status, MessageStatus.FAILED)

    async def test_date_headers_for_loaded_history(self):
        sync = self._sync(self.alice)
        await sync.open(self.conversation.id)
        await sync.send(self.conversation.id, self.alice.user.id, "a")
        await sync.send(self.conversation.id, self.alice.user.id, "b")
        self.assertEqual(sync.date_headers()[0], True)
        self.assertEqual(len(sync.date_headers()), 2)


if __name__ == "__main__":
    unittest.main()
