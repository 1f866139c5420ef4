"""Application factory that wires settings, store, event channel and API."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from .api import create_app
from .config import EventSettings, ServiceSettings, load_settings
from .database import Database
from .events import EventChannel, EventDeliveryError, InMemoryEventChannel, UserEventPublisher

logger = logging.getLogger("userservice.application")


def create_event_channel(settings: EventSettings) -> EventChannel:
    """Return the Kafka channel when enabled, otherwise an in-memory one."""

    if not settings.enabled:
        logger.warning(
            "Kafka publishing is disabled; user events are only kept in memory."
        )
        return InMemoryEventChannel()

    from .kafka import KafkaEventChannel

    channel = KafkaEventChannel(settings)
    try:
        channel.start()
    except EventDeliveryError as exc:
        # The service still starts; each delivery attempt reconnects and is
        # logged as a failure until the broker is back.
        logger.error("%s", exc)
    return channel


@dataclass
class Application:
    app: FastAPI
    database: Database
    publisher: UserEventPublisher
    channel: EventChannel

    def close(self) -> None:
        self.publisher.stop()
        close = getattr(self.channel, "close", None)
        if callable(close):
            close()


def create_application(settings: Optional[ServiceSettings] = None) -> Application:
    """Create the ASGI application together with the resources it owns."""

    resolved = settings or load_settings()

    database = Database(resolved.database_path)
    database.initialize()
    logger.info("Database initialised at %s", resolved.database_path)

    channel = create_event_channel(resolved.events)
    publisher = UserEventPublisher(
        channel,
        topic=resolved.events.topic,
        max_pending=resolved.events.max_pending,
    )
    app = create_app(database=database, publisher=publisher)
    return Application(app=app, database=database, publisher=publisher, channel=channel)


__all__ = ["Application", "create_application", "create_event_channel"]
