"""Error taxonomy shared by the client core and its backend adapters."""

from __future__ import annotations

from typing import Dict, Type


class ChatError(Exception):
    """Base class for every failure a component surfaces to its caller."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code
        super().__init__(self.message)


class SessionInvalidError(ChatError):
    code = "invalid_session"


class SessionExpiredError(ChatError):
    code = "session_expired"

    def __init__(self, message: str = "session expired, please log in again") -> None:
        super().__init__(message)


class AuthError(ChatError):
    code = "invalid_credentials"


class NotFoundError(ChatError):
    code = "not_found"


class ValidationError(ChatError):
    code = "invalid_request"


class PermissionDeniedError(ChatError):
    code = "forbidden"


class TransientError(ChatError):
    code = "unavailable"


class RealtimeUnavailableError(ChatError):
    code = "realtime_unavailable"


_BY_CODE: Dict[str, Type[ChatError]] = {
    cls.code: cls
    for cls in (
        SessionInvalidError,
        SessionExpiredError,
        AuthError,
        NotFoundError,
        ValidationError,
        PermissionDeniedError,
        TransientError,
        RealtimeUnavailableError,
    )
}

_BY_STATUS: Dict[int, Type[ChatError]] = {
    400: ValidationError,
    401: SessionInvalidError,
    403: PermissionDeniedError,
    404: NotFoundError,
    409: ValidationError,
    413: ValidationError,
}


def error_from_payload(status: int, payload: object) -> ChatError:
    """Map an HTTP error response onto the taxonomy.

    The JSON ``code`` wins when it is known; otherwise the status decides and
    anything unrecognised (5xx, proxies, garbage bodies) is treated as transient.
    """

    code = None
    message = ""
    if isinstance(payload, dict):
        code = payload.get("code")
        message = str(payload.get("message") or "")
    cls = _BY_CODE.get(code) if isinstance(code, str) else None
    if cls is None:
        cls = _BY_STATUS.get(status, TransientError)
    return cls(message or f"backend returned HTTP {status}")
