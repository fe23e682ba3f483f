"""Reference backend: accounts, object store, files and realtime push over aiohttp."""

from .config import ServerConfig, load_server_config_from_env
from .http_app import create_app
from .hub import Subscription, SubscriptionHub
from .objects import ObjectStore
from .server import main

__all__ = [
    "ObjectStore",
    "ServerConfig",
    "Subscription",
    "SubscriptionHub",
    "create_app",
    "load_server_config_from_env",
    "main",
]
