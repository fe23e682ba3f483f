from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List

from quickchat import rules
from quickchat.query import Lookup, Query, Record, expand

Callback = Callable[[str, str, Record], None]


@dataclass(eq=False)
class Subscription:
    actor_id: str
    query: Query
    callback: Callback

    def deliver(self, op: str, record: Record) -> None:
        self.callback(op, self.query.kind, record)


class SubscriptionHub:
    """Registers query subscriptions and pushes matching, visible changes to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, actor_id: str, query: Query, callback: Callback) -> Subscription:
        subscription = Subscription(actor_id=actor_id, query=query, callback=callback)
        self._subscriptions.setdefault(query.kind, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.query.kind)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.query.kind, None)

    def subscriber_count(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())

    def broadcast(self, op: str, kind: str, record: Record, lookup: Lookup) -> None:
        for subscription in list(self._subscriptions.get(kind, [])):
            if not subscription.query.matches(record):
                continue
            if not rules.visible_to(kind, record, subscription.actor_id, lookup):
                continue
            subscription.deliver(op, expand(kind, record, subscription.query.includes, lookup))
