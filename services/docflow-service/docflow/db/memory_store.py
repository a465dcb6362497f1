# services/docflow-service/docflow/db/memory_store.py
from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from docflow.db.store import (
    WriteKind,
    WriteOp,
    apply_write,
    doc_id,
    matches_condition,
    parent_path,
    sort_key,
)
from docflow.models import QueryCondition

logger = logging.getLogger("docflow.db")

T = TypeVar("T")


class MemoryWriteBatch:
    def __init__(self, store: "MemoryDocumentStore") -> None:
        self._store = store
        self._ops: List[WriteOp] = []
        self.committed = False

    def write(self, op: WriteOp) -> None:
        if self.committed:
            raise RuntimeError("Batch already committed")
        self._ops.append(op)

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> None:
        if self.committed:
            raise RuntimeError("Batch already committed")
        self.committed = True
        self._store._apply(self._ops)
        self._store.commits.append(len(self._ops))


class MemoryTransaction:
    def __init__(self, store: "MemoryDocumentStore") -> None:
        self._store = store
        self._ops: List[WriteOp] = []

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        return await self._store.get(path)

    async def query(self, col_path: str, conditions: Sequence[QueryCondition] = (), **kwargs: Any):
        return await self._store.query(col_path, conditions, **kwargs)

    def write(self, op: WriteOp) -> None:
        self._ops.append(op)


class MemoryDocumentStore:
    """
    In-process store used by tests and local runs. Documents are kept in a
    flat dict keyed by full path; sub-collections are implicit.
    """

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._txn_lock = asyncio.Lock()
        self.commits: List[int] = []
        for path, data in (initial or {}).items():
            self._docs[path] = copy.deepcopy(data)

    # ---------- reads ---------- #
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def exists(self, path: str) -> bool:
        return path in self._docs

    async def query(
        self,
        col_path: str,
        conditions: Sequence[QueryCondition] = (),
        *,
        order_by: Sequence[str] = (),
        start_after_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        rows = [
            (doc_id(path), doc)
            for path, doc in self._docs.items()
            if parent_path(path) == col_path and all(matches_condition(doc, c) for c in conditions)
        ]
        rows.sort(key=lambda r: sort_key(r[0], r[1], order_by))

        if start_after_id is not None:
            cursor_doc = self._docs.get(f"{col_path}/{start_after_id}")
            if cursor_doc is None:
                logger.warning("Cursor document %s/%s not found; starting from the top", col_path, start_after_id)
            else:
                cursor = sort_key(start_after_id, cursor_doc, order_by)
                rows = [r for r in rows if sort_key(r[0], r[1], order_by) > cursor]

        if limit is not None:
            rows = rows[:limit]
        return [(i, copy.deepcopy(d)) for i, d in rows]

    async def fetch_ids(self, col_path: str, condition: Optional[QueryCondition] = None) -> List[str]:
        rows = await self.query(col_path, [condition] if condition else [])
        return [i for i, _ in rows]

    # ---------- writes ---------- #
    def _apply(self, ops: Sequence[WriteOp]) -> None:
        for op in ops:
            result = apply_write(self._docs.get(op.path), op)
            if result is None:
                self._docs.pop(op.path, None)
            else:
                self._docs[op.path] = result

    def batch(self) -> MemoryWriteBatch:
        return MemoryWriteBatch(self)

    async def run_transaction(self, fn: Callable[[MemoryTransaction], Awaitable[T]]) -> T:
        async with self._txn_lock:
            txn = MemoryTransaction(self)
            result = await fn(txn)
            self._apply(txn._ops)
            return result

    async def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        kind = WriteKind.MERGE if merge else WriteKind.SET
        self._apply([WriteOp(kind=kind, path=path, data=data)])

    async def delete(self, path: str) -> None:
        self._apply([WriteOp(kind=WriteKind.DELETE, path=path)])

    # ---------- test helpers ---------- #
    def dump(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._docs)
