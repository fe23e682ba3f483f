"""In-process backend: one shared ``MemoryStore`` and a ``MemoryBackend`` per signed-in client."""

from __future__ import annotations

import hashlib
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import rules
from .backend import Backend, ChangeCallback, ChangeEvent, Subscription
from .errors import AuthError, NotFoundError, RealtimeUnavailableError, SessionInvalidError, ValidationError
from .models import FileRef, User
from .query import KIND_USER, KINDS, Query, Record, expand


def _now_ms() -> int:
    return int(time.time() * 1000)


def _hash_secret(salt: str, secret: str) -> str:
    return hashlib.sha256(f"{salt}:{secret}".encode("utf-8")).hexdigest()


@dataclass
class _Listener:
    query: Query
    actor_id: str
    callback: ChangeCallback


class MemoryStore:
    """Object store, accounts, sessions and files held in process memory."""

    def __init__(self, *, now_func=_now_ms, session_ttl_ms: int = 30 * 24 * 60 * 60 * 1000) -> None:
        self._now = now_func
        self._session_ttl_ms = session_ttl_ms
        self._objects: Dict[str, Dict[str, Record]] = {kind: {} for kind in KINDS}
        self._accounts: Dict[str, Tuple[str, str, str]] = {}  # identifier -> (user_id, salt, hash)
        self._sessions: Dict[str, Tuple[str, int]] = {}  # token -> (user_id, expires_at_ms)
        self._files: Dict[str, bytes] = {}
        self._listeners: List[_Listener] = []

    # accounts and sessions

    def signup(self, identifier: str, secret: str, attributes: Dict[str, Any]) -> Tuple[Record, str]:
        if not identifier or not secret:
            raise ValidationError("identifier and secret required")
        if identifier in self._accounts:
            raise ValidationError("identifier already registered")
        fields = rules.clean_fields(KIND_USER, attributes)
        fields.setdefault("is_registered", False)
        now_ms = self._now()
        user_id = secrets.token_hex(5)
        record = {"id": user_id, "identifier": identifier, **fields, "created_at_ms": now_ms, "updated_at_ms": now_ms}
        salt = secrets.token_hex(8)
        self._accounts[identifier] = (user_id, salt, _hash_secret(salt, secret))
        self._objects[KIND_USER][user_id] = record
        return dict(record), self._open_session(user_id)

    def login(self, identifier: str, secret: str) -> Tuple[Record, str]:
        account = self._accounts.get(identifier)
        if account is None:
            raise AuthError("invalid identifier/secret")
        user_id, salt, digest = account
        if not secrets.compare_digest(digest, _hash_secret(salt, secret)):
            raise AuthError("invalid identifier/secret")
        return dict(self._objects[KIND_USER][user_id]), self._open_session(user_id)

    def logout(self, token: str) -> None:
        self._sessions.pop(token, None)

    def resolve_session(self, token: Optional[str]) -> str:
        entry = self._sessions.get(token or "")
        if entry is None:
            raise SessionInvalidError("invalid session token")
        user_id, expires_at_ms = entry
        if expires_at_ms <= self._now():
            self._sessions.pop(token or "", None)
            raise SessionInvalidError("session token expired")
        return user_id

    def invalidate_sessions(self, user_id: Optional[str] = None) -> None:
        for token, (owner, _) in list(self._sessions.items()):
            if user_id is None or owner == user_id:
                del self._sessions[token]

    def _open_session(self, user_id: str) -> str:
        token = f"st_{secrets.token_urlsafe(16)}"
        self._sessions[token] = (user_id, self._now() + self._session_ttl_ms)
        return token

    # objects

    def _lookup(self, kind: str, object_id: str) -> Optional[Record]:
        return self._objects.get(kind, {}).get(object_id)

    def _require(self, kind: str, object_id: str) -> Record:
        rules.require_kind(kind)
        record = self._lookup(kind, object_id)
        if record is None:
            raise NotFoundError(f"{kind} {object_id} not found")
        return record

    def get(self, kind: str, object_id: str, actor_id: str, includes: Sequence[str] = ()) -> Record:
        record = self._require(kind, object_id)
        if not rules.visible_to(kind, record, actor_id, self._lookup):
            raise NotFoundError(f"{kind} {object_id} not found")
        return expand(kind, record, includes, self._lookup)

    def query(self, query: Query, actor_id: str) -> List[Record]:
        rules.require_kind(query.kind)
        visible = (
            record
            for record in self._objects[query.kind].values()
            if rules.visible_to(query.kind, record, actor_id, self._lookup)
        )
        return [expand(query.kind, record, query.includes, self._lookup) for record in query.apply(visible)]

    def create(self, kind: str, record: Record, actor_id: str) -> Record:
        fields = rules.check_create(kind, rules.clean_fields(kind, record), actor_id, self._lookup)
        now_ms = self._now()
        stored = {"id": secrets.token_hex(5), **fields, "created_at_ms": now_ms, "updated_at_ms": now_ms}
        self._objects[kind][stored["id"]] = stored
        self._publish("create", kind, stored)
        return dict(stored)

    def update(self, kind: str, object_id: str, changes: Record, actor_id: str) -> Record:
        existing = self._require(kind, object_id)
        if not rules.visible_to(kind, existing, actor_id, self._lookup):
            raise NotFoundError(f"{kind} {object_id} not found")
        applied = rules.check_update(kind, existing, rules.clean_fields(kind, changes), actor_id, self._lookup)
        existing.update(applied)
        existing["updated_at_ms"] = max(self._now(), int(existing.get("updated_at_ms") or 0))
        self._publish("update", kind, existing)
        return dict(existing)

    def destroy(self, kind: str, object_id: str, actor_id: str) -> None:
        existing = self._require(kind, object_id)
        if not rules.visible_to(kind, existing, actor_id, self._lookup):
            raise NotFoundError(f"{kind} {object_id} not found")
        rules.check_destroy(kind, existing, actor_id)
        del self._objects[kind][object_id]

    # files

    def put_file(self, data: bytes, name: str) -> FileRef:
        stored_name = f"{secrets.token_hex(8)}_{name}"
        self._files[stored_name] = bytes(data)
        return FileRef(name=stored_name, url=f"memory://files/{stored_name}")

    def read_file(self, name: str) -> bytes:
        try:
            return self._files[name]
        except KeyError:
            raise NotFoundError(f"file {name} not found") from None

    # realtime

    def listen(self, query: Query, actor_id: str, callback: ChangeCallback) -> _Listener:
        listener = _Listener(query=query, actor_id=actor_id, callback=callback)
        self._listeners.append(listener)
        return listener

    def unlisten(self, listener: _Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def _publish(self, op: str, kind: str, record: Record) -> None:
        for listener in list(self._listeners):
            if listener.query.kind != kind or not listener.query.matches(record):
                continue
            if not rules.visible_to(kind, record, listener.actor_id, self._lookup):
                continue
            listener.callback(ChangeEvent(op=op, kind=kind, record=expand(kind, record, listener.query.includes, self._lookup)))


class _MemorySubscription(Subscription):
    def __init__(self, store: MemoryStore, listener: _Listener) -> None:
        self._store = store
        self._listener: Optional[_Listener] = listener

    async def unsubscribe(self) -> None:
        if self._listener is not None:
            self._store.unlisten(self._listener)
            self._listener = None


class MemoryBackend(Backend):
    """A client handle onto a :class:`MemoryStore`.

    ``realtime=False`` models a runtime where push subscriptions are not
    available, forcing consumers onto their polling path.
    """

    def __init__(self, store: MemoryStore, *, realtime: bool = True) -> None:
        self.store = store
        self.supports_realtime = realtime
        self._token: Optional[str] = None
        self._user: Optional[User] = None

    def _actor(self) -> str:
        return self.store.resolve_session(self._token)

    async def login(self, identifier: str, secret: str) -> User:
        record, token = self.store.login(identifier, secret)
        self._token = token
        self._user = User.from_record(record)
        return self._user

    async def signup(self, identifier: str, secret: str, attributes: Optional[Dict[str, Any]] = None) -> User:
        record, token = self.store.signup(identifier, secret, dict(attributes or {}))
        self._token = token
        self._user = User.from_record(record)
        return self._user

    def current_user(self) -> Optional[User]:
        return self._user

    async def logout(self) -> None:
        if self._token is not None:
            self.store.logout(self._token)
        self._token = None
        self._user = None

    async def query(self, query: Query) -> List[Record]:
        return self.store.query(query, self._actor())

    async def get(self, kind: str, object_id: str, includes: Sequence[str] = ()) -> Record:
        return self.store.get(kind, object_id, self._actor(), includes)

    async def save(self, kind: str, record: Record) -> Record:
        actor_id = self._actor()
        object_id = record.get("id")
        if object_id:
            saved = self.store.update(kind, object_id, record, actor_id)
        else:
            saved = self.store.create(kind, record, actor_id)
        if kind == KIND_USER and saved["id"] == actor_id:
            self._user = User.from_record(saved)
        return saved

    async def destroy(self, kind: str, object_id: str) -> None:
        self.store.destroy(kind, object_id, self._actor())

    async def upload_file(self, data: bytes, name: str) -> FileRef:
        self._actor()
        return self.store.put_file(data, name)

    async def subscribe(self, query: Query, callback: ChangeCallback) -> Subscription:
        if not self.supports_realtime:
            raise RealtimeUnavailableError("realtime disabled for this client")
        listener = self.store.listen(query, self._actor(), callback)
        return _MemorySubscription(self.store, listener)
