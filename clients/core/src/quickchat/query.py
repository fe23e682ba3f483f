"""Declarative object queries shared by every backend implementation.

Records are plain JSON-compatible dicts carrying ``id``, ``created_at_ms`` and
``updated_at_ms`` next to their kind-specific fields. Pointer fields end in
``_id`` (or ``_ids`` for lists) and can be expanded in place through
``includes``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

Record = Dict[str, Any]

KIND_USER = "User"
KIND_CONVERSATION = "Conversation"
KIND_MESSAGE = "Message"
KINDS = (KIND_USER, KIND_CONVERSATION, KIND_MESSAGE)

OPS = ("eq", "ne", "has", "has_all")

# (kind, include name) -> (pointer field, target kind)
INCLUDES: Dict[Tuple[str, str], Tuple[str, str]] = {
    (KIND_MESSAGE, "sender"): ("sender_id", KIND_USER),
    (KIND_MESSAGE, "conversation"): ("conversation_id", KIND_CONVERSATION),
    (KIND_CONVERSATION, "participants"): ("participant_ids", KIND_USER),
    (KIND_CONVERSATION, "last_message"): ("last_message_id", KIND_MESSAGE),
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def matches(self, record: Record) -> bool:
        current = record.get(self.field)
        if self.op == "eq":
            return current == self.value
        if self.op == "ne":
            return current != self.value
        if self.op == "has":
            return isinstance(current, list) and self.value in current
        if self.op == "has_all":
            return isinstance(current, list) and all(item in current for item in self.value)
        raise ValueError(f"unsupported filter op: {self.op}")


@dataclass(frozen=True)
class Query:
    """An immutable query description; builder methods return copies."""

    kind: str
    filters: Tuple[Filter, ...] = ()
    includes: Tuple[str, ...] = ()
    order_by: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0

    def where(self, field: str, op: str, value: Any) -> "Query":
        if op not in OPS:
            raise ValueError(f"unsupported filter op: {op}")
        return replace(self, filters=self.filters + (Filter(field, op, value),))

    def include(self, *names: str) -> "Query":
        for name in names:
            if (self.kind, name) not in INCLUDES:
                raise ValueError(f"{self.kind} has no include named {name!r}")
        return replace(self, includes=self.includes + tuple(n for n in names if n not in self.includes))

    def ascending(self, field: str) -> "Query":
        return replace(self, order_by=field)

    def descending(self, field: str) -> "Query":
        return replace(self, order_by=f"-{field}")

    def take(self, limit: int) -> "Query":
        return replace(self, limit=limit)

    def skip(self, offset: int) -> "Query":
        return replace(self, offset=offset)

    def matches(self, record: Record) -> bool:
        return all(item.matches(record) for item in self.filters)

    def apply(self, records: Iterable[Record]) -> List[Record]:
        """Filter, sort, page and cap ``records``.

        Sorting is stable, so records that tie on the sort key keep the order
        in which the store handed them over (arrival order).
        """

        selected = [record for record in records if self.matches(record)]
        if self.order_by:
            field = self.order_by.lstrip("-")
            selected.sort(key=lambda record: _sort_key(record.get(field)), reverse=self.order_by.startswith("-"))
        if self.offset:
            selected = selected[self.offset :]
        if self.limit is not None:
            selected = selected[: max(self.limit, 0)]
        return selected

    def to_wire(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "filters": [[item.field, item.op, item.value] for item in self.filters],
            "includes": list(self.includes),
            "order": self.order_by,
            "limit": self.limit,
            "offset": self.offset,
        }

    @classmethod
    def from_wire(cls, payload: Any) -> "Query":
        if not isinstance(payload, dict):
            raise ValueError("query must be an object")
        kind = payload.get("kind")
        if kind not in KINDS:
            raise ValueError("unknown kind")
        query = cls(kind=kind)
        for entry in payload.get("filters") or []:
            if not isinstance(entry, list) or len(entry) != 3 or not isinstance(entry[0], str):
                raise ValueError("filters must be [field, op, value] triples")
            query = query.where(entry[0], entry[1], entry[2])
        includes = payload.get("includes") or []
        if not isinstance(includes, list) or any(not isinstance(name, str) for name in includes):
            raise ValueError("includes must be a list of names")
        query = query.include(*includes)
        order = payload.get("order")
        if order is not None:
            if not isinstance(order, str) or not order.lstrip("-"):
                raise ValueError("order must be a field name")
            query = replace(query, order_by=order)
        limit = payload.get("limit")
        if limit is not None:
            if not isinstance(limit, int) or isinstance(limit, bool) or limit < 0:
                raise ValueError("limit must be a non-negative integer")
            query = query.take(limit)
        offset = payload.get("offset") or 0
        if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
            raise ValueError("offset must be a non-negative integer")
        query = query.skip(offset)
        return query


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts first so records missing the field stay together.
    if value is None:
        return (0, 0)
    return (1, value)


Lookup = Callable[[str, str], Optional[Record]]


def expand(kind: str, record: Record, includes: Sequence[str], lookup: Lookup) -> Record:
    """Return a copy of ``record`` with the requested pointers resolved.

    Dangling pointers expand to ``None`` (or are dropped from lists), matching
    how a deleted target simply stops being visible.
    """

    expanded = dict(record)
    for name in includes:
        pointer_field, target_kind = INCLUDES[(kind, name)]
        pointer = record.get(pointer_field)
        if isinstance(pointer, list):
            targets = [lookup(target_kind, target_id) for target_id in pointer]
            expanded[name] = [target for target in targets if target is not None]
        elif isinstance(pointer, str):
            expanded[name] = lookup(target_kind, pointer)
        else:
            expanded[name] = None
    return expanded
