"""Credential persistence, silent re-authentication and the per-user session context."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .backend import Backend
from .errors import ChatError, SessionExpiredError, SessionInvalidError
from .kv_store import KeyValueStore
from .models import Credential, User

logger = logging.getLogger(__name__)

SESSION_KEY = "quickchat.session"

T = TypeVar("T")


class SessionManager:
    """Keeps one credential per device and turns it back into an identity."""

    def __init__(self, backend: Backend, store: KeyValueStore, *, key: str = SESSION_KEY) -> None:
        self._backend = backend
        self._store = store
        self._key = key

    def save_session(self, identifier: str, secret: str) -> None:
        if not identifier or not secret:
            logger.warning("not saving session: identifier and secret are both required")
            return
        try:
            self._store.set(self._key, Credential(identifier, secret).to_json())
        except OSError as exc:
            logger.warning("could not persist session for %s: %s", identifier, exc)

    def clear_session(self) -> None:
        try:
            self._store.remove(self._key)
        except OSError as exc:
            logger.warning("could not clear persisted session: %s", exc)

    def saved_credential(self) -> Optional[Credential]:
        try:
            raw = self._store.get(self._key)
        except OSError as exc:
            logger.warning("could not read persisted session: %s", exc)
            return None
        if not raw:
            return None
        return Credential.from_json(raw)

    async def restore_user(self, *, force_login: bool = False) -> Optional[User]:
        """Return an authenticated identity for the saved credential, or ``None``.

        An already-active identity with the same identifier is reused unless
        ``force_login`` is set (the backend has just rejected its session).
        Failures are logged and reported as ``None``; they never raise.
        """

        credential = self.saved_credential()
        if credential is None:
            return None
        if not force_login:
            current = self._backend.current_user()
            if current is not None and current.identifier == credential.identifier:
                return current
        try:
            user = await self._backend.login(credential.identifier, credential.secret)
        except ChatError as exc:
            logger.warning("session restore for %s failed: %s", credential.identifier, exc.code)
            return None
        logger.info("restored session for %s", credential.identifier)
        return user


@dataclass
class SessionContext:
    """Explicit identity threaded through every component call."""

    backend: Backend
    sessions: SessionManager
    user: Optional[User] = None

    def require_user(self) -> User:
        if self.user is None:
            raise SessionExpiredError()
        return self.user


async def call_with_recovery(context: SessionContext, operation: Callable[[], Awaitable[T]]) -> T:
    """Run ``operation``; on an invalid session restore once and retry once.

    A second rejection, or a failed restore, becomes :class:`SessionExpiredError`
    so the caller routes back to interactive login.
    """

    try:
        return await operation()
    except SessionInvalidError:
        logger.info("session rejected by backend, attempting recovery")

    user = await context.sessions.restore_user(force_login=True)
    if user is None:
        context.user = None
        raise SessionExpiredError()
    context.user = user
    try:
        return await operation()
    except SessionInvalidError as exc:
        context.user = None
        raise SessionExpiredError() from exc
