from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ticketflow.tickets.errors import EngineUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff applied to transient engine failures only."""

    max_attempts: int = 3
    initial_wait: float = 0.2
    max_wait: float = 2.0

    async def run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Await ``call`` until it succeeds or the attempt budget is spent.

        Only :class:`EngineUnavailableError` is retried; the last one is
        re-raised unchanged once attempts are exhausted.
        """

        def _log_retry(state: RetryCallState) -> None:
            outcome = state.outcome
            error = outcome.exception() if outcome is not None else None
            logger.warning(
                "Engine call %s failed (attempt %d/%d): %s",
                operation,
                state.attempt_number,
                self.max_attempts,
                error,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_wait, min=self.initial_wait, max=self.max_wait),
            retry=retry_if_exception_type(EngineUnavailableError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await call()
        raise AssertionError("retry loop exited without an outcome")
