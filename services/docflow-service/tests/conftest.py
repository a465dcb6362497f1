"""Shared fixtures: in-memory store, recording publisher, sample schemas."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from docflow.core.engine import DocflowEngine
from docflow.db.memory_store import MemoryDocumentStore
from docflow.logics.retry import RetryScheduler
from docflow.schema import compile_schema, view, view_array_map, view_map


class RecordingPublisher:
    """Keeps published messages in memory instead of sending them to a broker."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, Dict[str, Any], Optional[str]]] = []

    async def publish(self, topic: str, payload: Dict[str, Any], message_id: Optional[str] = None) -> None:
        self.messages.append((topic, payload, message_id))

    def by_topic(self, topic: str) -> List[Dict[str, Any]]:
        return [p for t, p, _ in self.messages if t == topic]

    def take(self) -> List[Tuple[str, Dict[str, Any], Optional[str]]]:
        taken, self.messages = self.messages, []
        return taken


USERS_ENTITIES = ["user", "friend", "server", "post"]


def users_structure(*, sync_create: bool = False, peer_sync: bool = False) -> Dict[str, Any]:
    return {
        "users": {
            "user": {
                "friends": {
                    "friend": [view("user", ["name", "avatarUrl"], sync_create=sync_create, peer_sync=peer_sync)],
                },
            },
        },
        "servers": {
            "server": {
                "createdBy": view_map("user", ["name"]),
                "members": [view_array_map("user", ["name"])],
                "posts": {"post": {}},
            },
        },
    }


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def registry():
    return compile_schema(users_structure(), USERS_ENTITIES)


@pytest.fixture
def make_engine(store, publisher):
    """Builds an engine over the shared store/publisher for a given schema."""

    def _make(structure=None, entities=None, **kwargs):
        kwargs.setdefault("retry_scheduler", RetryScheduler(base_delay=0, max_attempts=3, max_pending=10))
        return DocflowEngine.from_declaration(
            store,
            publisher,
            structure if structure is not None else users_structure(),
            entities or USERS_ENTITIES,
            **kwargs,
        )

    return _make


@pytest.fixture
def pump(publisher):
    """Feeds queued messages back into the engine until the queue is quiet."""

    async def _pump(engine: DocflowEngine, max_rounds: int = 20) -> int:
        handlers = engine.handlers()
        delivered = 0
        for _ in range(max_rounds):
            batch = publisher.take()
            if not batch:
                break
            for topic, payload, _ in batch:
                handler = handlers.get(topic)
                if handler is not None:
                    await handler(payload)
                    delivered += 1
        return delivered

    return _pump
