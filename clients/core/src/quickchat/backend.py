"""The narrow backend capability consumed by the client core."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import RealtimeUnavailableError
from .models import FileRef, User
from .query import Query, Record


@dataclass(frozen=True)
class ChangeEvent:
    op: str  # "create" | "update"
    kind: str
    record: Record


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription(abc.ABC):
    """A live push subscription; ``unsubscribe`` must be idempotent.

    Transports that can drop on their own set ``lost`` and call ``on_lost``
    once the subscription stops delivering.
    """

    lost = False
    on_lost: Optional[Callable[[], None]] = None

    def _mark_lost(self) -> None:
        self.lost = True
        if self.on_lost is not None:
            self.on_lost()

    @abc.abstractmethod
    async def unsubscribe(self) -> None:
        raise NotImplementedError


class Backend(abc.ABC):
    """Auth, object store, file storage and realtime push behind one handle.

    Every method raises :mod:`quickchat.errors` classes only; transport
    details never leak past an implementation.
    """

    supports_realtime = False

    @abc.abstractmethod
    async def login(self, identifier: str, secret: str) -> User:
        raise NotImplementedError

    @abc.abstractmethod
    async def signup(self, identifier: str, secret: str, attributes: Optional[Dict[str, Any]] = None) -> User:
        raise NotImplementedError

    @abc.abstractmethod
    def current_user(self) -> Optional[User]:
        """Return the cached signed-in identity without touching the network."""

        raise NotImplementedError

    @abc.abstractmethod
    async def logout(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def query(self, query: Query) -> List[Record]:
        """Return every record ``query`` selects; server-side page caps are followed, never surfaced."""

        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, kind: str, object_id: str, includes: Sequence[str] = ()) -> Record:
        raise NotImplementedError

    @abc.abstractmethod
    async def save(self, kind: str, record: Record) -> Record:
        """Create ``record`` when it has no ``id``; otherwise apply its fields as a partial update."""

        raise NotImplementedError

    @abc.abstractmethod
    async def destroy(self, kind: str, object_id: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def upload_file(self, data: bytes, name: str) -> FileRef:
        raise NotImplementedError

    async def subscribe(self, query: Query, callback: ChangeCallback) -> Subscription:
        raise RealtimeUnavailableError("this backend has no realtime transport")

    async def close(self) -> None:
        return None
