# services/docflow-service/docflow/db/__init__.py
from .store import (
    WriteKind,
    WriteOp,
    WriteBatch,
    Transaction,
    DocumentStore,
    parent_path,
    doc_id,
)
from .memory_store import MemoryDocumentStore

__all__ = [
    "WriteKind",
    "WriteOp",
    "WriteBatch",
    "Transaction",
    "DocumentStore",
    "parent_path",
    "doc_id",
    "MemoryDocumentStore",
]
