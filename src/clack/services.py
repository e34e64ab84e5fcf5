from __future__ import annotations

from dataclasses import dataclass

from .auth import Authenticator
from .change_feed import ChangeFeed, ConnectionRegistry
from .db import Database
from .dispatcher import ToolDispatcher
from .settings import Settings, settings as default_settings


@dataclass
class ChatServices:
    """Everything one running server shares across requests."""

    config: Settings
    store: Database
    auth: Authenticator
    registry: ConnectionRegistry
    feed: ChangeFeed
    dispatcher: ToolDispatcher


def build_services(config: Settings | None = None, store: Database | None = None) -> ChatServices:
    config = config or default_settings
    store = store or Database(config.db_path)
    registry = ConnectionRegistry(queue_size=config.sse_queue_size)
    feed = ChangeFeed(registry, store)
    return ChatServices(
        config=config,
        store=store,
        auth=Authenticator(store, config),
        registry=registry,
        feed=feed,
        dispatcher=ToolDispatcher(store, feed, config=config),
    )
