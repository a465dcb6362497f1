# services/docflow-service/docflow/infra/telemetry.py
from __future__ import annotations
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

logger = logging.getLogger("docflow.telemetry")


@dataclass
class Elapsed:
    ms: float = 0.0


@contextmanager
def timer(metric_name: str, *, warn_above_ms: Optional[float] = None) -> Iterator[Elapsed]:
    """
    Times the wrapped block; the yielded holder carries the duration once the block exits.
    """
    elapsed = Elapsed()
    start = time.perf_counter()
    try:
        yield elapsed
    finally:
        elapsed.ms = (time.perf_counter() - start) * 1000.0
        if warn_above_ms is not None and elapsed.ms > warn_above_ms:
            logger.warning("%s took %.1fms to execute", metric_name, elapsed.ms)
        else:
            logger.debug("%s took %.1fms", metric_name, elapsed.ms)
