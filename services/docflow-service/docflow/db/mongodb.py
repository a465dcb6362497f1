# services/docflow-service/docflow/db/mongodb.py
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DeleteOne, ReplaceOne, UpdateOne

from docflow.config import settings
from docflow.db.store import WriteKind, WriteOp, doc_id, expand_dotted, parent_path
from docflow.models import QueryCondition

logger = logging.getLogger("docflow.db")

T = TypeVar("T")

_client: Optional[AsyncIOMotorClient] = None

_INTERNAL_FIELDS = ("_id", "_parent")


def get_client() -> AsyncIOMotorClient:
    """
    Singleton Motor client for the docflow-service.
    """
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(settings.mongo_uri, tz_aware=True)
    return _client


def get_db() -> AsyncIOMotorDatabase:
    return get_client()[settings.mongo_db]


def get_collection() -> AsyncIOMotorCollection:
    return get_db()[settings.mongo_collection]


async def init_indexes() -> None:
    """
    Every document lives in one collection keyed by its full path; `_parent`
    holds the collection path so child listings are a single index scan.
    """
    col = get_collection()
    await col.create_index([("_parent", ASCENDING)], name="ix_parent")
    # @views paging and filtering
    await col.create_index(
        [("_parent", ASCENDING), ("@dateCreated", ASCENDING), ("_id", ASCENDING)],
        name="ix_parent_created",
    )
    await col.create_index(
        [("_parent", ASCENDING), ("destEntity", ASCENDING)],
        name="ix_parent_dest_entity",
    )


async def close_client() -> None:
    """
    Optional graceful shutdown hook (call from app lifespan).
    """
    global _client
    if _client is not None:
        _client.close()
        _client = None


# ─────────────────────────────────────────────────────────────
# Translation helpers
# ─────────────────────────────────────────────────────────────

def _strip(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    return {k: v for k, v in raw.items() if k not in _INTERNAL_FIELDS}


def condition_to_filter(cond: QueryCondition) -> Dict[str, Any]:
    f, v = cond.field_name, cond.value
    op = cond.operator
    if op == "==":
        return {f: v}
    if op == "!=":
        return {f: {"$exists": True, "$ne": v}}
    if op == "<":
        return {f: {"$lt": v}}
    if op == "<=":
        return {f: {"$lte": v}}
    if op == ">":
        return {f: {"$gt": v}}
    if op == ">=":
        return {f: {"$gte": v}}
    if op == "in":
        return {f: {"$in": list(v)}}
    if op == "not-in":
        return {f: {"$exists": True, "$nin": list(v)}}
    if op == "array-contains":
        return {f: v}
    if op == "array-contains-any":
        return {f: {"$in": list(v)}}
    raise ValueError(f"Unsupported operator: {op}")


def write_op_to_requests(op: WriteOp) -> List[Any]:
    """
    One WriteOp may need two update requests: Mongo rejects $addToSet and
    $pull on the same field within a single update.
    """
    parent = parent_path(op.path)
    if op.kind == WriteKind.DELETE:
        return [DeleteOne({"_id": op.path})]
    if op.kind == WriteKind.SET:
        body = expand_dotted(op.data)
        body.update({"_id": op.path, "_parent": parent})
        return [ReplaceOne({"_id": op.path}, body, upsert=True)]

    update: Dict[str, Any] = {"$set": {**op.data, "_parent": parent}}
    if op.increments:
        update["$inc"] = dict(op.increments)
    if op.array_union:
        update["$addToSet"] = {k: {"$each": list(v)} for k, v in op.array_union.items()}
    if op.unset:
        update["$unset"] = {k: "" for k in op.unset}

    requests: List[Any] = []
    pulls_now = {k: v for k, v in op.array_remove.items() if k not in op.array_union}
    pulls_later = {k: v for k, v in op.array_remove.items() if k in op.array_union}
    if pulls_now:
        update["$pull"] = {k: {"$in": list(v)} for k, v in pulls_now.items()}
    requests.append(UpdateOne({"_id": op.path}, update, upsert=True))
    if pulls_later:
        requests.append(
            UpdateOne({"_id": op.path}, {"$pull": {k: {"$in": list(v)} for k, v in pulls_later.items()}})
        )
    return requests


# ─────────────────────────────────────────────────────────────
# Store
# ─────────────────────────────────────────────────────────────

class MongoWriteBatch:
    def __init__(self, col: AsyncIOMotorCollection) -> None:
        self._col = col
        self._requests: List[Any] = []

    def write(self, op: WriteOp) -> None:
        self._requests.extend(write_op_to_requests(op))

    async def commit(self) -> None:
        if not self._requests:
            return
        res = await self._col.bulk_write(self._requests, ordered=True)
        logger.debug(
            "Batch committed: upserted=%s modified=%s deleted=%s",
            res.upserted_count, res.modified_count, res.deleted_count,
        )


class MongoTransaction:
    def __init__(self, store: "MongoDocumentStore", session: AsyncIOMotorClientSession) -> None:
        self._store = store
        self._session = session
        self._requests: List[Any] = []

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        return _strip(await self._store._col.find_one({"_id": path}, session=self._session))

    async def query(self, col_path: str, conditions: Sequence[QueryCondition] = (), **kwargs: Any):
        return await self._store.query(col_path, conditions, session=self._session, **kwargs)

    def write(self, op: WriteOp) -> None:
        self._requests.extend(write_op_to_requests(op))

    async def flush(self) -> None:
        if self._requests:
            await self._store._col.bulk_write(self._requests, ordered=True, session=self._session)


class MongoDocumentStore:
    """
    DocumentStore backed by a single Mongo collection.
    """

    def __init__(self, col: Optional[AsyncIOMotorCollection] = None) -> None:
        self._col = col if col is not None else get_collection()

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        return _strip(await self._col.find_one({"_id": path}))

    async def exists(self, path: str) -> bool:
        return await self._col.count_documents({"_id": path}, limit=1) > 0

    async def query(
        self,
        col_path: str,
        conditions: Sequence[QueryCondition] = (),
        *,
        order_by: Sequence[str] = (),
        start_after_id: Optional[str] = None,
        limit: Optional[int] = None,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        clauses: List[Dict[str, Any]] = [{"_parent": col_path}]
        clauses.extend(condition_to_filter(c) for c in conditions)

        sort_fields = list(order_by) + ["_id"]
        if start_after_id is not None:
            cursor_doc = await self._col.find_one({"_id": f"{col_path}/{start_after_id}"}, session=session)
            if cursor_doc is None:
                logger.warning("Cursor document %s/%s not found; starting from the top", col_path, start_after_id)
            else:
                # keyset pagination over (order_by..., _id)
                ors = []
                for i, fname in enumerate(sort_fields):
                    clause = {sort_fields[j]: cursor_doc.get(sort_fields[j]) for j in range(i)}
                    clause[fname] = {"$gt": cursor_doc.get(fname)}
                    ors.append(clause)
                clauses.append({"$or": ors})

        cursor = self._col.find({"$and": clauses}, session=session).sort([(f, ASCENDING) for f in sort_fields])
        if limit is not None:
            cursor = cursor.limit(limit)
        rows: List[Tuple[str, Dict[str, Any]]] = []
        async for raw in cursor:
            rows.append((doc_id(raw["_id"]), _strip(raw)))
        return rows

    async def fetch_ids(self, col_path: str, condition: Optional[QueryCondition] = None) -> List[str]:
        filt: Dict[str, Any] = {"_parent": col_path}
        if condition is not None:
            filt = {"$and": [filt, condition_to_filter(condition)]}
        ids: List[str] = []
        async for raw in self._col.find(filt, projection={"_id": 1}):
            ids.append(doc_id(raw["_id"]))
        return ids

    def batch(self) -> MongoWriteBatch:
        return MongoWriteBatch(self._col)

    async def run_transaction(self, fn: Callable[[MongoTransaction], Awaitable[T]]) -> T:
        async with await self._col.database.client.start_session() as session:
            async def _callback(s: AsyncIOMotorClientSession) -> T:
                # with_transaction may re-run the callback; each attempt gets a fresh buffer
                txn = MongoTransaction(self, s)
                result = await fn(txn)
                await txn.flush()
                return result

            return await session.with_transaction(_callback)

    async def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        kind = WriteKind.MERGE if merge else WriteKind.SET
        await self._col.bulk_write(write_op_to_requests(WriteOp(kind=kind, path=path, data=data)))

    async def delete(self, path: str) -> None:
        await self._col.delete_one({"_id": path})
