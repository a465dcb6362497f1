# services/docflow-service/docflow/schema/compiler.py
from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Pattern, Tuple

from docflow.core.errors import SchemaError
from docflow.models import DestProp, DestPropType, ViewDefinition, ViewDefinitionOptions
from docflow.schema.markers import (
    ViewMarker,
    ViewMarkerKind,
    coerce_view_marker,
    is_view_marker,
    parse_view_marker,
)

logger = logging.getLogger("docflow.schema")

_PLACEHOLDER_RE = re.compile(r"^\{([^/{}]+)\}$")
_VIEW_PATH_RE = re.compile(r"^([^#=]*)(?:#([^=]+))?=(View.*)$")


class EntityRef(NamedTuple):
    entity: str
    entity_id: str
    ids: Dict[str, str]


def placeholder_names(template: str) -> List[str]:
    """Placeholder names of a template in order, e.g. ["userId", "friendId"]."""
    names: List[str] = []
    for segment in template.split("/"):
        m = _PLACEHOLDER_RE.match(segment)
        if m:
            names.append(m.group(1))
    return names


def template_to_pattern(template: str) -> Pattern[str]:
    parts = []
    for segment in template.split("/"):
        parts.append("([^/]+)" if _PLACEHOLDER_RE.match(segment) else re.escape(segment))
    return re.compile("^" + "/".join(parts) + "$")


# ─────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SchemaRegistry:
    """
    Compiled, read-only view of a schema declaration. Built once at startup
    and handed to every component that needs to reason about paths.
    """
    entities: Tuple[str, ...]
    doc_paths: Mapping[str, str]
    col_paths: Mapping[str, str]
    doc_path_patterns: Mapping[str, Pattern[str]]
    view_definitions: Tuple[ViewDefinition, ...] = field(default_factory=tuple)

    def find_entity(self, doc_path: str) -> Optional[str]:
        for entity, pattern in self.doc_path_patterns.items():
            if pattern.match(doc_path):
                return entity
        return None

    def parse_entity(self, doc_path: str) -> Optional[EntityRef]:
        for entity, pattern in self.doc_path_patterns.items():
            m = pattern.match(doc_path)
            if m:
                ids = dict(zip(placeholder_names(self.doc_paths[entity]), m.groups()))
                return EntityRef(entity=entity, entity_id=doc_path.rsplit("/", 1)[-1], ids=ids)
        return None

    def sub_doc_paths(self, entity: str, exclude: Optional[Iterable[str]] = None) -> List[str]:
        """
        Templates at or below the entity's template, minus the subtrees of
        excluded entities.
        """
        base = self.doc_paths.get(entity)
        if base is None:
            return []
        excluded = [self.doc_paths[e] for e in (exclude or []) if e in self.doc_paths]
        out = []
        for template in self.doc_paths.values():
            if template != base and not template.startswith(base + "/"):
                continue
            if any(template == ex or template.startswith(ex + "/") for ex in excluded):
                continue
            out.append(template)
        return out

    def view_definitions_for(self, *, src_entity: Optional[str] = None,
                             dest_entity: Optional[str] = None) -> List[ViewDefinition]:
        return [
            vd for vd in self.view_definitions
            if (src_entity is None or vd.src_entity == src_entity)
            and (dest_entity is None or vd.dest_entity == dest_entity)
        ]


# ─────────────────────────────────────────────────────────────
# Compilation steps
# ─────────────────────────────────────────────────────────────

def _marker_text(value: Any) -> Optional[str]:
    try:
        return coerce_view_marker(value).serialize()
    except SchemaError as e:
        logger.error("%s; skipped", e)
        return None


def _join(path: str, key: str) -> str:
    return key if not path else f"{path}/{key}"


def traverse_bfs(declaration: Mapping[str, Any]) -> List[str]:
    """
    Breadth-first walk of the declaration. Nested mappings produce plain
    paths; view markers produce view paths and are not descended into:

      parent#prop=<marker>   property view (single marker value, or a
                             ViewMap/ViewArrayMap marker inside a list)
      parent/key=<marker>    document view (View marker inside a list)
      parent=<marker>        document view (marker used as a mapping key)
    """
    paths: List[str] = []
    queue: deque = deque([(declaration, "")])

    while queue:
        node, path = queue.popleft()
        for key, value in node.items():
            if is_view_marker(key):
                text = _marker_text(key)
                if text:
                    paths.append(f"{path}={text}")
                continue

            if isinstance(value, Mapping):
                new_path = _join(path, key)
                paths.append(new_path)
                queue.append((value, new_path))
            elif isinstance(value, (list, tuple)):
                for item in value:
                    if not is_view_marker(item):
                        logger.warning("Ignoring non-view entry under %s: %r", _join(path, key), item)
                        continue
                    text = _marker_text(item)
                    if not text:
                        continue
                    if coerce_view_marker(item).kind == ViewMarkerKind.VIEW:
                        paths.append(f"{_join(path, key)}={text}")
                    else:
                        paths.append(f"{path}#{key}={text}")
            elif is_view_marker(value):
                text = _marker_text(value)
                if text:
                    paths.append(f"{path}#{key}={text}")

    return paths


def map_doc_paths(paths: List[str], entities: Iterable[str]) -> Dict[str, str]:
    entity_set = set(entities)
    doc_paths: Dict[str, str] = {}
    for entity in entities:
        rx = re.compile(rf"/{re.escape(entity)}([#=][^/]*)?$")
        for path in paths:
            if not rx.search(path):
                continue
            segments = []
            for element in path.split("/"):
                element = re.split(r"[#=]", element, maxsplit=1)[0]
                segments.append(f"{{{element}Id}}" if element in entity_set else element)
            doc_paths[entity] = "/".join(segments)
            break
    return doc_paths


def map_col_paths(doc_paths: Mapping[str, str]) -> Dict[str, str]:
    return {entity: template.rsplit("/", 1)[0] for entity, template in doc_paths.items()}


def map_view_definitions(paths: List[str], entities: Iterable[str]) -> List[ViewDefinition]:
    entity_set = set(entities)
    view_defs: List[ViewDefinition] = []

    for path in paths:
        m = _VIEW_PATH_RE.match(path)
        if not m:
            continue
        dest_path, dest_prop_name, text = m.groups()
        dest_entity = dest_path.rsplit("/", 1)[-1]
        try:
            marker: ViewMarker = parse_view_marker(text)
        except SchemaError as e:
            logger.error("%s; skipped", e)
            continue

        if marker.src_entity not in entity_set:
            logger.warning("View %s references unknown source entity %r; skipped", path, marker.src_entity)
            continue
        if dest_entity not in entity_set:
            logger.warning("View %s has no destination entity; skipped", path)
            continue

        dest_prop = None
        if dest_prop_name:
            prop_type = DestPropType.ARRAY_MAP if marker.kind == ViewMarkerKind.ARRAY_MAP else DestPropType.MAP
            dest_prop = DestProp(name=dest_prop_name, type=prop_type)

        view_defs.append(
            ViewDefinition(
                src_entity=marker.src_entity,
                src_props=list(marker.src_props),
                dest_entity=dest_entity,
                dest_prop=dest_prop,
                options=ViewDefinitionOptions(sync_create=marker.sync_create, peer_sync=marker.peer_sync),
                version=marker.version,
            )
        )

    return view_defs


def _entity_keys(entities: Iterable[Any]) -> Tuple[str, ...]:
    return tuple(e.value if isinstance(e, Enum) else str(e) for e in entities)


def compile_schema(declaration: Mapping[str, Any], entities: Iterable[Any]) -> SchemaRegistry:
    keys = _entity_keys(entities)
    paths = traverse_bfs(declaration)
    doc_paths = map_doc_paths(paths, keys)
    col_paths = map_col_paths(doc_paths)
    view_defs = map_view_definitions(paths, keys)
    patterns = {entity: template_to_pattern(template) for entity, template in doc_paths.items()}

    missing = [e for e in keys if e not in doc_paths]
    if missing:
        logger.info("Entities without a document path: %s", ", ".join(missing))
    logger.info("Schema compiled: %d entities, %d view definitions", len(doc_paths), len(view_defs))

    return SchemaRegistry(
        entities=keys,
        doc_paths=MappingProxyType(doc_paths),
        col_paths=MappingProxyType(col_paths),
        doc_path_patterns=MappingProxyType(patterns),
        view_definitions=tuple(view_defs),
    )
