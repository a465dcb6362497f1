# services/docflow-service/docflow/logics/retry.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docflow.config import settings
from docflow.core.errors import CancelThenRetryError

logger = logging.getLogger("docflow.retry")


class RetryScheduler:
    """
    Re-runs synthetic actions that answered cancel-then-retry, with exponential
    backoff. At most `max_pending` retries are in flight; extra ones are dropped.
    """

    def __init__(
        self,
        base_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        max_pending: Optional[int] = None,
    ) -> None:
        self.base_delay = settings.retry_base_delay_seconds if base_delay is None else base_delay
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.max_pending = max_pending or settings.retry_max_pending
        self._pending: Dict[str, asyncio.Task] = {}
        # waits of base, 2*base, 4*base ... counting the initial sleep
        self.wait = wait_exponential(multiplier=self.base_delay * 2, exp_base=2)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, key: str, fn: Callable[[], Awaitable[Any]]) -> bool:
        if key in self._pending:
            logger.debug("Retry for %s already scheduled", key)
            return True
        if len(self._pending) >= self.max_pending:
            logger.warning("Retry queue full (%d); dropping %s", self.max_pending, key)
            return False

        task = asyncio.create_task(self._run(key, fn))
        self._pending[key] = task
        task.add_done_callback(lambda _t, k=key: self._pending.pop(k, None))
        return True

    async def _run(self, key: str, fn: Callable[[], Awaitable[Any]]) -> None:
        def _before_sleep(retry_state) -> None:
            logger.info("Retrying %s in %.2fs (attempt %d)", key,
                        retry_state.next_action.sleep if retry_state.next_action else 0.0,
                        retry_state.attempt_number)

        retrying = AsyncRetrying(
            wait=self.wait,
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(CancelThenRetryError),
            before_sleep=_before_sleep,
            reraise=True,
        )
        try:
            # the inline attempt already failed once; first retry waits one base delay
            await asyncio.sleep(self.base_delay)
            async for attempt in retrying:
                with attempt:
                    await fn()
            logger.info("Retry of %s succeeded", key)
        except CancelThenRetryError:
            logger.warning("Giving up on %s after %d attempts", key, self.max_attempts)
        except Exception:
            logger.exception("Retry of %s failed", key)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        await asyncio.gather(*list(self._pending.values()), return_exceptions=True)
        self._pending.clear()
