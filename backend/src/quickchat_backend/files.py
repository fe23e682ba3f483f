from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass

from .sqlite_backend import SQLiteBackend

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StoredFile:
    name: str
    content_type: str
    data: bytes


def safe_name(name: str) -> str:
    cleaned = _UNSAFE.sub("_", name.strip()).strip("._")
    return cleaned[:80] or "file"


class FileStore:
    """Uploaded blobs keyed by a random prefix plus the sanitised original name."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def put(self, data: bytes, name: str, content_type: str = "application/octet-stream") -> str:
        stored_name = f"{secrets.token_hex(8)}_{safe_name(name)}"
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO files (name, content_type, data, created_at_ms) VALUES (?, ?, ?, ?)",
                (stored_name, content_type, data, int(time.time() * 1000)),
            )
        return stored_name

    def get(self, name: str) -> StoredFile | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT name, content_type, data FROM files WHERE name=?", (name,)
            ).fetchone()
        if row is None:
            return None
        return StoredFile(name=row[0], content_type=row[1], data=bytes(row[2]))
