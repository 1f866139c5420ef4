from __future__ import annotations

import logging
from pathlib import Path

import pytest
from aiokafka.errors import KafkaConnectionError
from fastapi.testclient import TestClient

from userservice import kafka
from userservice.application import create_application, create_event_channel
from userservice.config import EventSettings, ServiceSettings
from userservice.events import InMemoryEventChannel
from userservice.kafka import KafkaEventChannel


class UnreachableProducer:
    def __init__(self, **params) -> None:
        self.params = params

    async def start(self) -> None:
        raise KafkaConnectionError("no brokers available")

    async def stop(self) -> None:
        return None


def test_disabled_events_use_in_memory_channel() -> None:
    channel = create_event_channel(EventSettings(enabled=False))
    assert isinstance(channel, InMemoryEventChannel)


def test_unreachable_broker_does_not_prevent_startup(
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setattr(kafka, "AIOKafkaProducer", UnreachableProducer)

    with caplog.at_level(logging.ERROR, logger="userservice.application"):
        channel = create_event_channel(EventSettings(enabled=True, send_timeout=1.0))

    assert isinstance(channel, KafkaEventChannel)
    assert not channel.started
    assert "Failed to start Kafka producer" in caplog.text


def test_create_application_serves_users(tmp_path: Path) -> None:
    settings = ServiceSettings(database_path=tmp_path / "app.sqlite3", events=EventSettings(topic="app-events"))
    application = create_application(settings)
    try:
        with TestClient(application.app) as client:
            created = client.post(
                "/api/v1/users",
                json={"name": "John Doe", "email": "john@example.com", "age": 30},
            )
            assert created.status_code == 201, created.text

        application.publisher.flush()
        assert isinstance(application.channel, InMemoryEventChannel)
        [(topic, key, payload)] = application.channel.messages
        assert topic == "app-events"
        assert key == "john@example.com"
        assert payload["eventType"] == "USER_CREATED"
    finally:
        application.close()

    assert not application.publisher.running
