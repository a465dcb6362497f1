# services/docflow-service/docflow/db/store.py
"""
Narrow document-store interface consumed by the engine.

Documents live at "/"-delimited paths with alternating collection and id
segments ("users/u1/friends/f1"). Two implementations ship with the service:
MongoDocumentStore (db/mongodb.py) and MemoryDocumentStore (db/memory_store.py).
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
    runtime_checkable,
)

from docflow.models import QueryCondition

T = TypeVar("T")

_MISSING = object()


class WriteKind(str, Enum):
    SET = "set"          # overwrite whole document
    MERGE = "merge"      # upsert: field sets plus atomic transforms
    DELETE = "delete"


@dataclass
class WriteOp:
    """
    One physical write. For MERGE, keys of `data` may be dotted paths into
    nested maps ("followers.u1.name").
    """
    kind: WriteKind
    path: str
    data: Dict[str, Any] = field(default_factory=dict)
    increments: Dict[str, float] = field(default_factory=dict)
    array_union: Dict[str, List[Any]] = field(default_factory=dict)
    array_remove: Dict[str, List[Any]] = field(default_factory=dict)
    unset: List[str] = field(default_factory=list)


# ---------- path helpers ---------- #

def parent_path(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def doc_id(path: str) -> str:
    return path.rsplit("/", 1)[-1]


# ---------- dotted field helpers (shared by in-process evaluation) ---------- #

def get_field(doc: Dict[str, Any], dotted: str, default: Any = _MISSING) -> Any:
    if dotted in doc:
        return doc[dotted]
    cur: Any = doc
    for part in dotted.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def set_field(doc: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def delete_field(doc: Dict[str, Any], dotted: str) -> None:
    parts = dotted.split(".")
    cur: Any = doc
    for part in parts[:-1]:
        if not isinstance(cur, dict) or part not in cur:
            return
        cur = cur[part]
    if isinstance(cur, dict):
        cur.pop(parts[-1], None)


def expand_dotted(data: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in data.items():
        set_field(out, key, copy.deepcopy(value))
    return out


def apply_write(current: Optional[Dict[str, Any]], op: WriteOp) -> Optional[Dict[str, Any]]:
    """Result of applying op to a document held in memory (None means deleted)."""
    if op.kind == WriteKind.DELETE:
        return None
    if op.kind == WriteKind.SET:
        return expand_dotted(op.data)

    doc = copy.deepcopy(current) if current else {}
    for key, value in op.data.items():
        set_field(doc, key, copy.deepcopy(value))
    for key, amount in op.increments.items():
        existing = get_field(doc, key, 0)
        set_field(doc, key, (existing if isinstance(existing, (int, float)) else 0) + amount)
    for key, values in op.array_union.items():
        existing = get_field(doc, key, None)
        arr = list(existing) if isinstance(existing, list) else []
        for v in values:
            if v not in arr:
                arr.append(v)
        set_field(doc, key, arr)
    for key, values in op.array_remove.items():
        existing = get_field(doc, key, None)
        arr = list(existing) if isinstance(existing, list) else []
        set_field(doc, key, [v for v in arr if v not in values])
    for key in op.unset:
        delete_field(doc, key)
    return doc


def matches_condition(doc: Dict[str, Any], cond: QueryCondition) -> bool:
    value = get_field(doc, cond.field_name)
    op = cond.operator
    if value is _MISSING:
        return False
    try:
        if op == "==":
            return value == cond.value
        if op == "!=":
            return value != cond.value
        if op == "<":
            return value < cond.value
        if op == "<=":
            return value <= cond.value
        if op == ">":
            return value > cond.value
        if op == ">=":
            return value >= cond.value
        if op == "in":
            return value in cond.value
        if op == "not-in":
            return value not in cond.value
        if op == "array-contains":
            return isinstance(value, list) and cond.value in value
        if op == "array-contains-any":
            return isinstance(value, list) and any(v in value for v in cond.value)
    except TypeError:
        return False
    return False


def sort_key(doc_id_: str, doc: Dict[str, Any], order_by: Sequence[str]) -> Tuple:
    key = []
    for f in order_by:
        v = get_field(doc, f, None)
        key.append((0, "") if v is None else (1, v))
    key.append((1, doc_id_))
    return tuple(key)


# ─────────────────────────────────────────────────────────────
# Protocols
# ─────────────────────────────────────────────────────────────

class WriteBatch(Protocol):
    def write(self, op: WriteOp) -> None: ...

    async def commit(self) -> None: ...


class Transaction(Protocol):
    """
    Reads go to committed state; writes are buffered and applied atomically
    when the transaction function returns.
    """

    async def get(self, path: str) -> Optional[Dict[str, Any]]: ...

    async def query(
        self,
        col_path: str,
        conditions: Sequence[QueryCondition] = (),
        *,
        order_by: Sequence[str] = (),
        start_after_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]: ...

    def write(self, op: WriteOp) -> None: ...


@runtime_checkable
class DocumentStore(Protocol):
    async def get(self, path: str) -> Optional[Dict[str, Any]]: ...

    async def exists(self, path: str) -> bool: ...

    async def fetch_ids(self, col_path: str, condition: Optional[QueryCondition] = None) -> List[str]: ...

    async def query(
        self,
        col_path: str,
        conditions: Sequence[QueryCondition] = (),
        *,
        order_by: Sequence[str] = (),
        start_after_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]: ...

    def batch(self) -> WriteBatch: ...

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T: ...

    async def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None: ...

    async def delete(self, path: str) -> None: ...
