"""
Retryable operations

One retry abstraction shared by the export trigger, the bulk download and
the downstream sink: a retryable-error predicate, a maximum attempt count
and linear backoff (``delay * attempt``).
"""

from typing import Any, Awaitable, Callable, TypeVar

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from healthrelay.errors import RETRYABLE_STATUS_CODES, DownloadError, ProviderRequestError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """How many times to retry and how long to wait between attempts."""
    max_retries: int = Field(default=3, ge=0)
    delay_seconds: float = Field(default=0.5, ge=0)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def is_transient_error(exc: BaseException) -> bool:
    """Timeouts, transport failures and the retryable HTTP statuses."""
    if isinstance(exc, (ProviderRequestError, DownloadError)):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    operation_name: str = "operation",
    **log_context: Any,
) -> T:
    """
    Await ``operation`` until it succeeds, fails with a non-retryable
    error, or runs out of attempts. The last exception is re-raised.
    """

    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying after transient failure",
            operation=operation_name,
            attempt=retry_state.attempt_number,
            max_attempts=policy.max_attempts,
            next_delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
            **log_context,
        )

    async for attempt in AsyncRetrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_incrementing(start=policy.delay_seconds, increment=policy.delay_seconds),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await operation()
    raise AssertionError("retry loop exited without an outcome")
