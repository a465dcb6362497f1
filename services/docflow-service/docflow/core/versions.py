# services/docflow-service/docflow/core/versions.py
from __future__ import annotations

import re

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def _segment(text: str) -> int:
    m = _LEADING_INT_RE.match(text)
    return int(m.group(1)) if m else 0


def version_compare(a: str, b: str) -> int:
    """
    -1, 0 or 1. Dot segments compare numerically; missing segments count as
    0 and so does a segment without a leading number ("01.10" > "1.2").
    """
    pa = [_segment(s) for s in (a or "").split(".")]
    pb = [_segment(s) for s in (b or "").split(".")]
    width = max(len(pa), len(pb))
    pa += [0] * (width - len(pa))
    pb += [0] * (width - len(pb))
    for x, y in zip(pa, pb):
        if x != y:
            return 1 if x > y else -1
    return 0
