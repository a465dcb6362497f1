# services/docflow-service/docflow/schema/markers.py
"""
View markers: the declarative shorthand placed inside a schema declaration.

Markers are normally built with view(), view_map() and view_array_map().
The string form exists for declarations kept in data files; grammar v1:

    marker   := kind "@" version ":" entity ":" props [":" options]
    kind     := "View" | "ViewMap" | "ViewArrayMap"
    props    := prop ("," prop)* | ""
    options  := option ("," option)*
    option   := name "=" ("true" | "false")

Known option names are syncCreate and peerSync.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Tuple

from docflow.core.errors import SchemaError

logger = logging.getLogger("docflow.schema")

MARKER_GRAMMAR_VERSION = 1
DEFAULT_VIEW_VERSION = "0.0.0"

_OPTION_FIELDS = {"syncCreate": "sync_create", "peerSync": "peer_sync"}
_MARKER_PREFIX_RE = re.compile(r"^(View|ViewMap|ViewArrayMap)@")
_MARKER_RE = re.compile(r"^(View|ViewMap|ViewArrayMap)@([^:]+):([^:]+):([^:]*)(?::(.*))?$")


class ViewMarkerKind(str, Enum):
    VIEW = "View"
    MAP = "ViewMap"
    ARRAY_MAP = "ViewArrayMap"


@dataclass(frozen=True)
class ViewMarker:
    kind: ViewMarkerKind
    src_entity: str
    src_props: Tuple[str, ...] = ()
    sync_create: bool = False
    peer_sync: bool = False
    version: str = DEFAULT_VIEW_VERSION

    def serialize(self) -> str:
        text = f"{self.kind.value}@{self.version}:{self.src_entity}:{','.join(self.src_props)}"
        opts = []
        if self.sync_create:
            opts.append("syncCreate=true")
        if self.peer_sync:
            opts.append("peerSync=true")
        if opts:
            text += ":" + ",".join(opts)
        return text

    def __str__(self) -> str:
        return self.serialize()


# ---------- builders ---------- #

def _build(kind: ViewMarkerKind, entity: str, props: Iterable[str], version: str,
           sync_create: bool, peer_sync: bool) -> ViewMarker:
    return ViewMarker(
        kind=kind,
        src_entity=entity,
        src_props=tuple(props),
        sync_create=sync_create,
        peer_sync=peer_sync,
        version=version,
    )


def view(entity: str, props: Iterable[str] = (), *, version: str = DEFAULT_VIEW_VERSION,
         sync_create: bool = False, peer_sync: bool = False) -> ViewMarker:
    """Document-level view: the destination document is the copy."""
    return _build(ViewMarkerKind.VIEW, entity, props, version, sync_create, peer_sync)


def view_map(entity: str, props: Iterable[str] = (), *, version: str = DEFAULT_VIEW_VERSION,
             sync_create: bool = False, peer_sync: bool = False) -> ViewMarker:
    """Property view holding a single copy under one map property."""
    return _build(ViewMarkerKind.MAP, entity, props, version, sync_create, peer_sync)


def view_array_map(entity: str, props: Iterable[str] = (), *, version: str = DEFAULT_VIEW_VERSION,
                   sync_create: bool = False, peer_sync: bool = False) -> ViewMarker:
    """Property view holding many copies keyed by source id."""
    return _build(ViewMarkerKind.ARRAY_MAP, entity, props, version, sync_create, peer_sync)


# ---------- parsing ---------- #

def is_view_marker(value: Any) -> bool:
    if isinstance(value, ViewMarker):
        return True
    return isinstance(value, str) and _MARKER_PREFIX_RE.match(value) is not None


def parse_view_marker(text: str) -> ViewMarker:
    """
    Parse the string form of a marker. A malformed shape raises SchemaError;
    bad options are logged and dropped.
    """
    m = _MARKER_RE.match(text)
    if not m:
        raise SchemaError(f"Malformed view marker: {text!r}")
    kind, version, entity, props_str, options_str = m.groups()

    props = tuple(p for p in props_str.split(",") if p)
    flags = {"sync_create": False, "peer_sync": False}
    for pair in (options_str or "").split(","):
        if not pair:
            continue
        name, _, raw = pair.partition("=")
        field = _OPTION_FIELDS.get(name)
        if field is None:
            logger.warning("Unknown view option %r in %r; dropped", name, text)
            continue
        if raw not in ("true", "false"):
            logger.warning("View option %s=%r must be true or false; dropped", name, raw)
            continue
        flags[field] = raw == "true"

    return ViewMarker(
        kind=ViewMarkerKind(kind),
        src_entity=entity,
        src_props=props,
        version=version,
        **flags,
    )


def coerce_view_marker(value: Any) -> ViewMarker:
    if isinstance(value, ViewMarker):
        return value
    return parse_view_marker(str(value))
