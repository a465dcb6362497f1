# services/docflow-service/docflow/schema/__init__.py
from .markers import (
    ViewMarker,
    ViewMarkerKind,
    view,
    view_map,
    view_array_map,
    parse_view_marker,
)

from .compiler import (
    EntityRef,
    SchemaRegistry,
    compile_schema,
    traverse_bfs,
    map_doc_paths,
    map_col_paths,
    map_view_definitions,
)

__all__ = [
    "ViewMarker",
    "ViewMarkerKind",
    "view",
    "view_map",
    "view_array_map",
    "parse_view_marker",
    "EntityRef",
    "SchemaRegistry",
    "compile_schema",
    "traverse_bfs",
    "map_doc_paths",
    "map_col_paths",
    "map_view_definitions",
]
