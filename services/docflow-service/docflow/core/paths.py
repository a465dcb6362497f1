# services/docflow-service/docflow/core/paths.py
from __future__ import annotations

import logging
import re
from collections import deque
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence

from docflow.db.store import DocumentStore
from docflow.models import QueryCondition
from docflow.schema.compiler import SchemaRegistry

logger = logging.getLogger("docflow.paths")

_TRAILING_PLACEHOLDER_RE = re.compile(r"\{\w+Id\}$")


class DestPropRef(NamedTuple):
    base_path: str
    dest_prop: Optional[str]
    dest_prop_id: Optional[str]


def get_dest_prop_and_id(dst_path: str) -> DestPropRef:
    """
    Split "posts/p1#followers[u1]" into ("posts/p1", "followers", "u1").
    """
    if "#" not in dst_path:
        return DestPropRef(dst_path, None, None)
    base_path, dest_prop = dst_path.split("#", 1)
    dest_prop_id = None
    if "[" in dest_prop and dest_prop.endswith("]"):
        dest_prop, arg = dest_prop.split("[", 1)
        dest_prop_id = arg[:-1] or None
    return DestPropRef(base_path, dest_prop, dest_prop_id)


def placeholder_entity(segment: str) -> str:
    """"{userId}" -> "user"."""
    inner = segment[1:-1]
    return inner[:-2] if inner.endswith("Id") else inner


class PathResolver:
    """
    Turns path templates into concrete document paths by listing ids in the store.
    """

    def __init__(self, registry: SchemaRegistry, store: DocumentStore) -> None:
        self.registry = registry
        self.store = store

    async def does_path_exist(self, path: str) -> bool:
        return await self.store.exists(path)

    # ---------- hydrate ---------- #
    async def hydrate(
        self,
        template: str,
        conditions: Optional[Mapping[str, QueryCondition]] = None,
    ) -> List[str]:
        """
        Every concrete path matching `template`. Placeholders are expanded left
        to right; `conditions` narrows the ids listed for a given entity.
        """
        conditions = conditions or {}
        out: List[str] = []
        queue: deque = deque([(template.split("/"), 0)])

        while queue:
            segments, idx = queue.popleft()
            brace_idx = next((i for i in range(idx, len(segments)) if segments[i].startswith("{")), -1)

            if brace_idx == -1:
                path = "/".join(segments)
                # hard-coded ids after the last expanded placeholder
                if idx < len(segments) - 1 and not await self.does_path_exist(path):
                    logger.info("Document %s does not exist; skipping", path)
                    continue
                out.append(path)
                continue

            col_path = "/".join(segments[:brace_idx])
            entity = placeholder_entity(segments[brace_idx])
            condition = conditions.get(entity)
            ids = await self.store.fetch_ids(col_path, condition)
            if not ids:
                logger.info("No ids found for %s with condition %s; skipping", col_path, condition)
                continue
            for id_ in ids:
                queue.append((segments[:brace_idx] + [id_] + segments[brace_idx + 1:], brace_idx + 1))

        return out

    # ---------- expand ---------- #
    async def expand_and_group(
        self,
        start_path: str,
        conditions: Optional[Mapping[str, QueryCondition]] = None,
        exclude: Optional[Sequence[str]] = None,
    ) -> Dict[str, List[str]]:
        """
        The document at `start_path` plus every descendant document, grouped by entity.
        """
        conditions = conditions or {}
        entity = self.registry.find_entity(start_path)
        if not entity:
            return {}

        entity_template = self.registry.doc_paths[entity]
        pending = sorted(
            start_path + t[len(entity_template):]
            for t in self.registry.sub_doc_paths(entity, exclude)
        )
        resolved: Dict[str, List[str]] = {}
        expanded: List[str] = []
        queue: deque = deque(pending)

        while queue:
            path = queue.popleft()

            prefix = next((k for k in sorted(resolved) if path.startswith(k)), None)
            if prefix is not None:
                # an ancestor placeholder was already resolved; reuse its ids
                queue.extend(value + path[len(prefix):] for value in resolved[prefix])
                continue

            if _TRAILING_PLACEHOLDER_RE.search(path):
                col_path = path.rsplit("/", 1)[0]
                child_entity = self.registry.find_entity(path)
                ids = await self.store.fetch_ids(col_path, conditions.get(child_entity or ""))
                new_paths = [f"{col_path}/{id_}" for id_ in ids]
                resolved[path] = new_paths
                queue.extend(new_paths)
                continue

            expanded.append(path)

        grouped: Dict[str, List[str]] = {}
        for ent, pattern in self.registry.doc_path_patterns.items():
            paths = [p for p in expanded if pattern.match(p)]
            if paths:
                grouped[ent] = paths
        return grouped
