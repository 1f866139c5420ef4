"""Kafka event channel backed by aiokafka."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from .config import EventSettings
from .events import EventDeliveryError

logger = logging.getLogger("userservice.kafka")


def _parse_acks(value: str) -> int | str:
    stripped = value.strip().lower()
    if stripped in {"0", "1"}:
        return int(stripped)
    if stripped in {"all", "-1"}:
        return "all"
    raise ValueError(f"Unsupported acks setting '{value}'")


class KafkaEventChannel:
    """Publishes messages through an :class:`AIOKafkaProducer`.

    The producer lives on a private event loop running in a daemon thread, so
    :meth:`publish` can be called from ordinary worker threads. Every failure
    is reported as :class:`EventDeliveryError`.
    """

    def __init__(self, settings: EventSettings) -> None:
        self._settings = settings
        self._acks = _parse_acks(settings.acks)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._producer: Any = None
        self._start_lock = threading.Lock()
        self._closed = False

    @property
    def started(self) -> bool:
        return self._producer is not None

    def start(self) -> None:
        with self._start_lock:
            self._start()

    def _start(self) -> None:
        if self._loop is not None:
            return

        loop = asyncio.new_event_loop()
        thread = threading.Thread(target=loop.run_forever, name="kafka-event-loop", daemon=True)
        thread.start()
        self._loop = loop
        self._thread = thread

        future = asyncio.run_coroutine_threadsafe(self._start_producer(), loop)
        try:
            future.result(timeout=self._settings.send_timeout)
        except (KafkaError, FutureTimeoutError, OSError) as exc:
            future.cancel()
            self._stop_loop()
            raise EventDeliveryError(
                f"Failed to start Kafka producer for {self._settings.bootstrap_servers}: {exc}"
            ) from exc

        logger.info("Kafka producer started (bootstrap=%s)", self._settings.bootstrap_servers)

    async def _start_producer(self) -> None:
        producer = AIOKafkaProducer(
            bootstrap_servers=self._settings.bootstrap_servers,
            client_id=self._settings.client_id,
            acks=self._acks,
            key_serializer=lambda key: key.encode("utf-8") if key else None,
            value_serializer=lambda value: json.dumps(value, default=str).encode("utf-8"),
        )
        try:
            await producer.start()
        except BaseException:
            await producer.stop()
            raise
        self._producer = producer

    def publish(self, topic: str, key: str, payload: Dict[str, object]) -> None:
        if self._closed:
            raise EventDeliveryError("Kafka producer is closed")
        if self._producer is None:
            # Connect lazily when the broker was unavailable at startup.
            self.start()
        loop = self._loop
        producer = self._producer
        if loop is None or producer is None:
            raise EventDeliveryError("Kafka producer is not running")

        future = asyncio.run_coroutine_threadsafe(
            producer.send_and_wait(topic, value=payload, key=key),
            loop,
        )
        try:
            future.result(timeout=self._settings.send_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise EventDeliveryError(
                f"Timed out after {self._settings.send_timeout}s sending to {topic}"
            ) from exc
        except KafkaError as exc:
            raise EventDeliveryError(f"Kafka rejected message for {topic}: {exc}") from exc

    def close(self) -> None:
        self._closed = True
        loop = self._loop
        if loop is None:
            return

        producer = self._producer
        self._producer = None
        if producer is not None:
            future = asyncio.run_coroutine_threadsafe(producer.stop(), loop)
            try:
                future.result(timeout=self._settings.send_timeout)
            except (KafkaError, FutureTimeoutError, OSError) as exc:
                logger.warning("Kafka producer did not stop cleanly: %s", exc)
            else:
                logger.info("Kafka producer stopped")

        self._stop_loop()

    def _stop_loop(self) -> None:
        loop, thread = self._loop, self._thread
        self._loop = None
        self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=5)
        if not loop.is_running():
            loop.close()


__all__ = ["KafkaEventChannel"]
