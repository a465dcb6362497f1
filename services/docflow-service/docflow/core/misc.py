# services/docflow-service/docflow/core/misc.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

_ISO_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})?$")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def revive_datetimes(value: Any) -> Any:
    """
    Turn ISO-8601 strings back into datetimes after a JSON round trip
    through the queue.
    """
    if isinstance(value, str) and _ISO_DATETIME_RE.match(value):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if isinstance(value, dict):
        return {k: revive_datetimes(v) for k, v in value.items()}
    if isinstance(value, list):
        return [revive_datetimes(v) for v in value]
    return value


def deep_equal(a: Any, b: Any) -> bool:
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        return a.keys() == b.keys() and all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(deep_equal(x, y) for x, y in zip(a, b))
    return a == b


def get_form_modified_fields(form: Mapping[str, Any], document: Mapping[str, Any]) -> Dict[str, Any]:
    """Fields of `form` that differ from `document`; "@" bookkeeping keys are ignored."""
    modified: Dict[str, Any] = {}
    for key, value in form.items():
        if key.startswith("@"):
            continue
        if key not in document or not deep_equal(document[key], value):
            modified[key] = value
    return modified
