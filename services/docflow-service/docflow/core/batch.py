# services/docflow-service/docflow/core/batch.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from docflow.config import settings
from docflow.db.store import DocumentStore, WriteBatch, WriteKind, WriteOp

logger = logging.getLogger("docflow.batch")


class BatchWriter:
    """
    Shared write batch with auto-commit.

    Writers append to one lazily created store batch. When the batch reaches
    `batch_size` writes it is detached under the lock, so every concurrent
    caller lands in the same fresh batch afterwards, and committed outside it.
    """

    def __init__(self, store: DocumentStore, batch_size: Optional[int] = None) -> None:
        self._store = store
        self.batch_size = batch_size or settings.batch_size
        self._batch: Optional[WriteBatch] = None
        self._write_count = 0
        self._lock = asyncio.Lock()

    @property
    def write_count(self) -> int:
        return self._write_count

    async def apply(self, op: WriteOp) -> None:
        full: Optional[WriteBatch] = None
        async with self._lock:
            if self._batch is None:
                self._batch = self._store.batch()
                self._write_count = 0
            self._batch.write(op)
            self._write_count += 1
            if self._write_count >= self.batch_size:
                full, self._batch, self._write_count = self._batch, None, 0

        if full is not None:
            logger.info("Batch size limit reached; committing %d writes", self.batch_size)
            await full.commit()

    async def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        await self.apply(WriteOp(kind=WriteKind.MERGE if merge else WriteKind.SET, path=path, data=data))

    async def delete(self, path: str) -> None:
        await self.apply(WriteOp(kind=WriteKind.DELETE, path=path))

    async def commit(self) -> None:
        async with self._lock:
            pending, count = self._batch, self._write_count
            self._batch, self._write_count = None, 0
        if pending is not None and count:
            logger.info("Committing final batch of %d writes", count)
            await pending.commit()
