from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_SESSION_TTL_S = 30 * 24 * 60 * 60
DEFAULT_MAX_TEXT_CHARS = 4096
DEFAULT_MAX_FILE_BYTES = 5 * 1024 * 1024
DEFAULT_QUERY_LIMIT_MAX = 1000


@dataclass(frozen=True)
class ServerConfig:
    session_ttl_s: int = DEFAULT_SESSION_TTL_S
    max_text_chars: int = DEFAULT_MAX_TEXT_CHARS
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    query_limit_max: int = DEFAULT_QUERY_LIMIT_MAX

    @property
    def session_ttl_ms(self) -> int:
        return max(self.session_ttl_s, 0) * 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def load_server_config_from_env() -> ServerConfig:
    return ServerConfig(
        session_ttl_s=max(1, _parse_non_negative_int("QUICKCHAT_SESSION_TTL_S", DEFAULT_SESSION_TTL_S)),
        max_text_chars=max(1, _parse_non_negative_int("QUICKCHAT_MAX_TEXT_CHARS", DEFAULT_MAX_TEXT_CHARS)),
        max_file_bytes=_parse_non_negative_int("QUICKCHAT_MAX_FILE_BYTES", DEFAULT_MAX_FILE_BYTES),
        query_limit_max=max(1, _parse_non_negative_int("QUICKCHAT_QUERY_LIMIT_MAX", DEFAULT_QUERY_LIMIT_MAX)),
    )
