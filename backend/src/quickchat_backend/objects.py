"""Durable object store: records as JSON rows, queried and access-checked in process."""

from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from quickchat import rules
from quickchat.errors import NotFoundError, ValidationError
from quickchat.query import KIND_USER, Query, Record, expand

from .config import ServerConfig
from .hub import SubscriptionHub
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return secrets.token_hex(5)


class ObjectStore:
    def __init__(
        self,
        backend: SQLiteBackend,
        hub: SubscriptionHub,
        config: ServerConfig | None = None,
        now_func=_now_ms,
    ) -> None:
        self._backend = backend
        self._hub = hub
        self._config = config or ServerConfig()
        self._now = now_func

    # storage

    def lookup(self, kind: str, object_id: str) -> Optional[Record]:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT data FROM objects WHERE kind=? AND id=?", (kind, object_id)
            ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def _all(self, kind: str) -> List[Record]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT data FROM objects WHERE kind=? ORDER BY seq", (kind,)
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def _insert(self, kind: str, record: Record) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO objects (kind, id, data) VALUES (?, ?, ?)",
                (kind, record["id"], json.dumps(record, sort_keys=True)),
            )

    def _write(self, kind: str, record: Record) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "UPDATE objects SET data=? WHERE kind=? AND id=?",
                (json.dumps(record, sort_keys=True), kind, record["id"]),
            )

    def _require_visible(self, kind: str, object_id: str, actor_id: str) -> Record:
        rules.require_kind(kind)
        record = self.lookup(kind, object_id)
        if record is None or not rules.visible_to(kind, record, actor_id, self.lookup):
            raise NotFoundError(f"{kind} {object_id} not found")
        return record

    # users

    def create_user(self, identifier: str, attributes: Dict[str, Any]) -> Record:
        fields = rules.clean_fields(KIND_USER, attributes)
        fields.setdefault("is_registered", False)
        now_ms = self._now()
        record = {"id": _new_id(), "identifier": identifier, **fields, "created_at_ms": now_ms, "updated_at_ms": now_ms}
        self._insert(KIND_USER, record)
        return record

    # operations

    def get(self, kind: str, object_id: str, actor_id: str, includes: Sequence[str] = ()) -> Record:
        record = self._require_visible(kind, object_id, actor_id)
        try:
            query = Query(kind).include(*includes)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return expand(kind, record, query.includes, self.lookup)

    def query_page(self, query: Query, actor_id: str) -> Tuple[List[Record], bool]:
        """Run ``query`` capped at ``query_limit_max``.

        The flag is true when the cap held back records the query asked for;
        callers continue with a larger offset.
        """

        rules.require_kind(query.kind)
        visible = (
            record for record in self._all(query.kind) if rules.visible_to(query.kind, record, actor_id, self.lookup)
        )
        selected = replace(query, limit=None).apply(visible)
        wanted = len(selected) if query.limit is None else min(query.limit, len(selected))
        page = selected[: min(wanted, self._config.query_limit_max)]
        return [expand(query.kind, record, query.includes, self.lookup) for record in page], len(page) < wanted

    def query(self, query: Query, actor_id: str) -> List[Record]:
        return self.query_page(query, actor_id)[0]

    def create(self, kind: str, fields: Record, actor_id: str) -> Record:
        checked = rules.check_create(
            kind,
            rules.clean_fields(kind, fields),
            actor_id,
            self.lookup,
            max_text_chars=self._config.max_text_chars,
        )
        now_ms = self._now()
        record = {"id": _new_id(), **checked, "created_at_ms": now_ms, "updated_at_ms": now_ms}
        self._insert(kind, record)
        logger.debug("created %s %s", kind, record["id"])
        self._hub.broadcast("create", kind, record, self.lookup)
        return record

    def update(self, kind: str, object_id: str, changes: Record, actor_id: str) -> Record:
        existing = self._require_visible(kind, object_id, actor_id)
        applied = rules.check_update(kind, existing, rules.clean_fields(kind, changes), actor_id, self.lookup)
        existing.update(applied)
        existing["updated_at_ms"] = max(self._now(), int(existing.get("updated_at_ms") or 0))
        self._write(kind, existing)
        self._hub.broadcast("update", kind, existing, self.lookup)
        return existing

    def destroy(self, kind: str, object_id: str, actor_id: str) -> None:
        existing = self._require_visible(kind, object_id, actor_id)
        rules.check_destroy(kind, existing, actor_id)
        with self._backend.lock:
            self._backend.connection.execute("DELETE FROM objects WHERE kind=? AND id=?", (kind, object_id))
        logger.info("deleted %s %s", kind, object_id)
