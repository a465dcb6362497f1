# services/docflow-service/docflow/core/counters.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from docflow.core.misc import now_utc
from docflow.db.store import DocumentStore, Transaction, WriteKind, WriteOp

logger = logging.getLogger("docflow.counters")

COUNTERS_COLLECTION = "@counters"


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def next_count(current: Optional[Dict[str, Any]], max_value: Optional[int], now: datetime) -> int:
    """
    Value a counter takes on its next use. It restarts at 1 on the first use
    of a new UTC day, or once it has reached max_value.
    """
    if current is None:
        return 1
    count = int(current.get("count") or 0)
    last = current.get("lastUpdatedAt")
    if not isinstance(last, datetime) or _as_utc(last).date() < _as_utc(now).date():
        return 1
    if max_value is not None and count >= max_value:
        return 1
    return count + 1


class GlobalCounters:
    """
    Named counters stored at @counters/<name>, bumped inside a transaction
    so concurrent writers never receive the same value.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def next_value(self, name: str, max_value: Optional[int] = None,
                         txn: Optional[Transaction] = None) -> int:
        if txn is not None:
            return await self._bump(txn, name, max_value)
        return await self.store.run_transaction(lambda t: self._bump(t, name, max_value))

    async def _bump(self, txn: Transaction, name: str, max_value: Optional[int]) -> int:
        path = f"{COUNTERS_COLLECTION}/{name}"
        now = now_utc()
        count = next_count(await txn.get(path), max_value, now)
        txn.write(WriteOp(
            kind=WriteKind.SET,
            path=path,
            data={"@id": name, "count": count, "lastUpdatedAt": now},
        ))
        logger.debug("Counter %s -> %d", name, count)
        return count
