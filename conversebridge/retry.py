"""
Converse Bridge - Retry policy for outbound proxy calls.

Only rate limiting and server-side failures are retried, with a fixed
delay. Everything else propagates on the first attempt.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("conversebridge.retry")

T = TypeVar("T")

MAX_RETRIES = 5
RETRY_DELAY = 1.0
TRANSIENT_STATUS_CODES = frozenset({429, 500, 503})


def error_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by an error, if any."""
    for attr in ("status_code", "status"):
        status = getattr(error, attr, None)
        if isinstance(status, int):
            return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


@dataclass
class RetryPolicy:
    """Bounded fixed-delay retry for transient proxy failures.

    A call that keeps failing with a transient status is attempted
    ``max_retries + 1`` times; the last error is then re-raised.
    """

    max_retries: int = MAX_RETRIES
    delay: float = RETRY_DELAY
    transient_statuses: frozenset[int] = field(default_factory=lambda: TRANSIENT_STATUS_CODES)

    def is_transient(self, error: BaseException) -> bool:
        return error_status(error) in self.transient_statuses

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        model: str = "",
        operation: str = "converse",
    ) -> T:
        """Await ``call()`` with retries."""
        attempt = 0
        while True:
            try:
                return await call()
            except Exception as e:
                if not self.is_transient(e) or attempt >= self.max_retries:
                    raise
                logger.warning(
                    "Retrying %s for model %s after %s (status %s), attempt %d of %d",
                    operation,
                    model,
                    type(e).__name__,
                    error_status(e),
                    attempt + 1,
                    self.max_retries,
                )
                attempt += 1
                await asyncio.sleep(self.delay)
