# services/docflow-service/docflow/core/consolidation.py
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from docflow.core.instructions import merge_instructions
from docflow.core.paths import PathResolver
from docflow.models import LogicResultDoc, LogicResultDocAction as A

logger = logging.getLogger("docflow.consolidation")


class Outcome(str, Enum):
    MERGE_FIELDS = "merge-fields"
    REPLACE = "replace"
    DROP_INCOMING = "drop-incoming"


# (existing survivor, incoming) -> outcome. Copies are resolved to merges
# before reduction, so a later delete always beats an earlier copy.
PRECEDENCE: Dict[Tuple[A, A], Outcome] = {
    (A.MERGE, A.MERGE): Outcome.MERGE_FIELDS,
    (A.MERGE, A.CREATE): Outcome.MERGE_FIELDS,
    (A.CREATE, A.MERGE): Outcome.MERGE_FIELDS,
    (A.CREATE, A.CREATE): Outcome.MERGE_FIELDS,
    (A.MERGE, A.DELETE): Outcome.REPLACE,
    (A.CREATE, A.DELETE): Outcome.REPLACE,
    (A.DELETE, A.DELETE): Outcome.REPLACE,
    (A.DELETE, A.MERGE): Outcome.DROP_INCOMING,
    (A.DELETE, A.CREATE): Outcome.DROP_INCOMING,
}

_APPENDED = (A.SUBMIT_FORM, A.SIMULATE_SUBMIT_FORM)
_REDUCIBLE = (A.MERGE, A.CREATE, A.DELETE)


def _union(existing: Optional[dict], incoming: Optional[dict], kind: str, dst_path: str) -> Optional[dict]:
    if existing is None and incoming is None:
        return None
    out = dict(existing or {})
    for key in incoming or {}:
        if key in out:
            logger.warning('Overwriting key "%s" in %s for dstPath "%s"', key, kind, dst_path)
    out.update(incoming or {})
    return out


def merge_intents(existing: LogicResultDoc, incoming: LogicResultDoc) -> LogicResultDoc:
    dst_path = existing.dst_path
    action = A.MERGE
    if A.CREATE in (existing.action, incoming.action):
        if existing.action == A.MERGE:
            logger.info('Existing "merge" for dstPath "%s" is being converted to "create"', dst_path)
        action = A.CREATE
    return existing.model_copy(
        update={
            "action": action,
            "doc": _union(existing.doc, incoming.doc, "doc", dst_path),
            "instructions": merge_instructions(existing.instructions, incoming.instructions, dst_path),
            "priority": existing.priority or incoming.priority,
            "skip_run_view_logics": existing.skip_run_view_logics and incoming.skip_run_view_logics,
        }
    )


def reduce_by_dst_path(docs: Sequence[LogicResultDoc]) -> Dict[str, List[LogicResultDoc]]:
    """
    Collapse already-expanded intents to one survivor per destination path.
    submit-form entries are kept as independent entries. Keys come back sorted.
    """
    grouped: Dict[str, List[LogicResultDoc]] = {}

    for doc in docs:
        entries = grouped.setdefault(doc.dst_path, [])

        if doc.action in _APPENDED:
            entries.append(doc)
            continue
        if doc.action not in _REDUCIBLE:
            logger.warning('Unexpected action "%s" for dstPath "%s" during reduction; dropped',
                           doc.action.value, doc.dst_path)
            continue

        idx = next((i for i, e in enumerate(entries) if e.action in _REDUCIBLE), None)
        if idx is None:
            entries.append(doc)
            continue

        existing = entries[idx]
        outcome = PRECEDENCE[(existing.action, doc.action)]
        if outcome == Outcome.MERGE_FIELDS:
            entries[idx] = merge_intents(existing, doc)
        elif outcome == Outcome.REPLACE:
            logger.warning('Action "%s" for dstPath "%s" is being overwritten by action "delete"',
                           existing.action.value, doc.dst_path)
            del entries[idx]
            entries.append(doc)
        else:
            logger.warning('Action "%s" ignored because a "delete" for dstPath "%s" already exists',
                           doc.action.value, doc.dst_path)

    return {path: grouped[path] for path in sorted(grouped) if grouped[path]}


class Consolidator:
    """
    Expands recursive/copy intents against live data, then reduces them.
    Inputs are never mutated.
    """

    def __init__(self, resolver: PathResolver) -> None:
        self.resolver = resolver
        self.store = resolver.store

    async def _expand_recursive(self, docs: Sequence[LogicResultDoc]) -> List[LogicResultDoc]:
        out: List[LogicResultDoc] = []
        for doc in docs:
            if doc.action not in (A.RECURSIVE_DELETE, A.RECURSIVE_COPY):
                out.append(doc)
                continue

            root = doc.dst_path if doc.action == A.RECURSIVE_DELETE else doc.src_path
            if not root:
                logger.warning('"%s" for dstPath "%s" has no srcPath; skipped', doc.action.value, doc.dst_path)
                continue

            grouped = await self.resolver.expand_and_group(root, exclude=doc.skip_entity_during_recursion)
            for paths in grouped.values():
                for path in paths:
                    if doc.action == A.RECURSIVE_DELETE:
                        out.append(LogicResultDoc(
                            action=A.DELETE, dst_path=path, priority=doc.priority,
                            skip_run_view_logics=doc.skip_run_view_logics,
                        ))
                        continue
                    data = await self.store.get(path)
                    if data is None:
                        logger.warning("Source %s vanished during recursive copy; skipped", path)
                        continue
                    out.append(LogicResultDoc(
                        action=A.MERGE, dst_path=doc.dst_path + path[len(root):], doc=data,
                        priority=doc.priority, skip_run_view_logics=doc.skip_run_view_logics,
                    ))
        return out

    async def _convert_copy_to_merge(self, docs: Sequence[LogicResultDoc]) -> List[LogicResultDoc]:
        out: List[LogicResultDoc] = []
        for doc in docs:
            if doc.action != A.COPY:
                out.append(doc)
                continue
            data = await self.store.get(doc.src_path) if doc.src_path else None
            if data is None:
                logger.warning('Copy source "%s" for dstPath "%s" not found; dropped', doc.src_path, doc.dst_path)
                continue
            out.append(doc.model_copy(update={"action": A.MERGE, "doc": data, "src_path": None}))
        return out

    async def expand_consolidate_and_group_by_dst_path(
        self, docs: Sequence[LogicResultDoc]
    ) -> Dict[str, List[LogicResultDoc]]:
        expanded = await self._expand_recursive(docs)
        resolved = await self._convert_copy_to_merge(expanded)
        return reduce_by_dst_path(resolved)
