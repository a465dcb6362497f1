# services/docflow-service/docflow/events/rabbit.py
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

import aio_pika
from aio_pika import ExchangeType, Message

from docflow.config import settings

logger = logging.getLogger("docflow.events")


def rk(topic: str, org: Optional[str] = None) -> str:
    """Routing key for a topic, e.g. "docflow.view-logics"."""
    return f"{org or settings.events_org}.{topic}"


class RabbitBus:
    """
    Async publisher on a durable topic exchange using aio-pika.
    """
    def __init__(self) -> None:
        self._conn: Optional[aio_pika.RobustConnection] = None
        self._chan: Optional[aio_pika.abc.AbstractChannel] = None
        self._ex: Optional[aio_pika.abc.AbstractExchange] = None
        self._lock = asyncio.Lock()

    @property
    def channel(self) -> Optional[aio_pika.abc.AbstractChannel]:
        return self._chan

    @property
    def exchange(self) -> Optional[aio_pika.abc.AbstractExchange]:
        return self._ex

    async def connect(self) -> "RabbitBus":
        async with self._lock:
            if self._conn and not self._conn.is_closed:
                return self
            logger.info("Rabbit: connecting...")
            self._conn = await aio_pika.connect_robust(settings.rabbitmq_uri)
            self._chan = await self._conn.channel(publisher_confirms=False)
            await self._chan.set_qos(prefetch_count=settings.consumer_prefetch)
            self._ex = await self._chan.declare_exchange(
                settings.rabbitmq_exchange, ExchangeType.TOPIC, durable=True
            )
            logger.info("Rabbit: connected; exchange declared (%s)", settings.rabbitmq_exchange)
        return self

    async def close(self) -> None:
        if self._conn and not self._conn.is_closed:
            await self._conn.close()
            logger.info("Rabbit: connection closed")

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        message_id: Optional[str] = None,
    ) -> None:
        if not self._ex:
            await self.connect()

        routing_key = rk(topic)
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
        message = Message(
            body=body,
            message_id=message_id or uuid.uuid4().hex,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            content_type="application/json",
            headers={"x-service": settings.service_name},
        )
        await self._ex.publish(message, routing_key=routing_key)
        logger.info("Rabbit: published %s (%d bytes)", routing_key, len(body))


_bus: Optional[RabbitBus] = None


def get_bus() -> RabbitBus:
    global _bus
    if _bus is None:
        _bus = RabbitBus()
    return _bus
