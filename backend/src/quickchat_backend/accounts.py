"""Identifier/secret accounts with salted PBKDF2 hashes."""

from __future__ import annotations

import hashlib
import secrets

from .sqlite_backend import SQLiteBackend

_ITERATIONS = 100_000


def _hash_secret(salt: str, secret: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt.encode("utf-8"), _ITERATIONS).hex()


class AccountStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def exists(self, identifier: str) -> bool:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT 1 FROM accounts WHERE identifier=?", (identifier,)
            ).fetchone()
        return row is not None

    def register(self, identifier: str, secret: str, user_id: str) -> None:
        salt = secrets.token_hex(16)
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO accounts (identifier, user_id, salt, secret_hash) VALUES (?, ?, ?, ?)",
                (identifier, user_id, salt, _hash_secret(salt, secret)),
            )

    def verify(self, identifier: str, secret: str) -> str | None:
        """Return the account's user id when ``secret`` matches, else ``None``."""

        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT user_id, salt, secret_hash FROM accounts WHERE identifier=?",
                (identifier,),
            ).fetchone()
        if row is None:
            return None
        if not secrets.compare_digest(row[2], _hash_secret(row[1], secret)):
            return None
        return row[0]
