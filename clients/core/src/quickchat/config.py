from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_BASE_URL = "http://127.0.0.1:8080"
DEFAULT_HOME = Path.home() / ".quickchat"
DEFAULT_POLL_INTERVAL_S = 2.0
# Phone accounts share one secret; possession of the number is proven by the OTP.
DEFAULT_ACCOUNT_SECRET = "quickchat-phone-account"


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    home: Path = DEFAULT_HOME
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    realtime: bool = True
    http_timeout_s: float = 10.0
    account_secret: str = DEFAULT_ACCOUNT_SECRET

    @property
    def store_path(self) -> Path:
        return self.home / "store.json"


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def load_client_config_from_env() -> ClientConfig:
    home = os.environ.get("QUICKCHAT_HOME")
    return ClientConfig(
        base_url=os.environ.get("QUICKCHAT_BASE_URL") or DEFAULT_BASE_URL,
        home=Path(home).expanduser() if home else DEFAULT_HOME,
        poll_interval_s=_parse_positive_float("QUICKCHAT_POLL_INTERVAL_S", DEFAULT_POLL_INTERVAL_S),
        realtime=_parse_bool01("QUICKCHAT_REALTIME", True),
        http_timeout_s=_parse_positive_float("QUICKCHAT_HTTP_TIMEOUT_S", 10.0),
        account_secret=os.environ.get("QUICKCHAT_ACCOUNT_SECRET") or DEFAULT_ACCOUNT_SECRET,
    )
