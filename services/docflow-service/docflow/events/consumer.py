# services/docflow-service/docflow/events/consumer.py
from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aio_pika

from docflow.config import settings
from docflow.core.misc import now_utc
from docflow.db.store import DocumentStore
from docflow.events.rabbit import RabbitBus, rk
from docflow.models import QueryCondition

logger = logging.getLogger("docflow.consumer")

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ProcessedIds:
    """
    Duplicate suppression for at-least-once delivery, kept in the document
    store under @topics/<topic>/processedIds/<id>.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    @staticmethod
    def col_path(topic: str) -> str:
        return f"@topics/{topic}/processedIds"

    async def is_processed(self, topic: str, message_id: str) -> bool:
        return await self.store.exists(f"{self.col_path(topic)}/{message_id}")

    async def track(self, topic: str, message_id: str) -> None:
        await self.store.set(f"{self.col_path(topic)}/{message_id}", {"timestamp": now_utc()})

    async def cleanup(self, topic: str, retention_hours: Optional[int] = None) -> int:
        hours = retention_hours if retention_hours is not None else settings.processed_ids_retention_hours
        cutoff = now_utc() - timedelta(hours=hours)
        rows = await self.store.query(
            self.col_path(topic),
            [QueryCondition(field_name="timestamp", operator="<", value=cutoff)],
        )
        for id_, _ in rows:
            await self.store.delete(f"{self.col_path(topic)}/{id_}")
        if rows:
            logger.info("Removed %d processed ids older than %dh from %s", len(rows), hours, topic)
        return len(rows)


async def handle_once(
    processed: ProcessedIds, topic: str, message_id: Optional[str], payload: Dict[str, Any], handler: Handler
) -> bool:
    """
    Runs `handler` unless `message_id` was already handled. Returns False for
    duplicates. Handler errors propagate so the broker redelivers.
    """
    if message_id and await processed.is_processed(topic, message_id):
        logger.info("Skipping duplicate message %s on %s", message_id, topic)
        return False
    await handler(payload)
    if message_id:
        await processed.track(topic, message_id)
    return True


class QueueConsumer:
    """
    Binds one durable queue per topic to the exchange and feeds decoded
    messages to the registered handlers.
    """

    def __init__(self, bus: RabbitBus, store: DocumentStore) -> None:
        self.bus = bus
        self.processed = ProcessedIds(store)
        self._handlers: Dict[str, Handler] = {}
        self._tags: List[tuple] = []

    def register(self, topic: str, handler: Handler) -> None:
        self._handlers[topic] = handler

    async def start(self) -> None:
        await self.bus.connect()
        chan = self.bus.channel
        for topic, handler in self._handlers.items():
            queue = await chan.declare_queue(f"{settings.service_name}.{topic}", durable=True)
            await queue.bind(self.bus.exchange, routing_key=rk(topic))
            tag = await queue.consume(self._on_message_factory(topic, handler))
            self._tags.append((queue, tag))
            logger.info("Consuming %s", topic)

    async def stop(self) -> None:
        for queue, tag in self._tags:
            await queue.cancel(tag)
        self._tags.clear()

    async def cleanup_processed_ids(self) -> int:
        removed = 0
        for topic in self._handlers:
            removed += await self.processed.cleanup(topic)
        return removed

    def _on_message_factory(self, topic: str, handler: Handler):
        async def _on_message(message: aio_pika.abc.AbstractIncomingMessage) -> None:
            # requeue on failure; duplicates are filtered by message id
            async with message.process(requeue=True):
                payload = json.loads(message.body.decode("utf-8"))
                await handle_once(self.processed, topic, message.message_id, payload, handler)

        return _on_message
