"""
Transient failure handling for every remote call made by the store.

Azure Blob Storage occasionally fails requests that succeed when repeated a
few seconds later: server errors, dropped TLS handshakes, and a handful of
known glitches (spurious 403s, DNS hiccups, unrelated 404s). RetryPolicy
classifies those failures and retries them with a fixed delay, a per-attempt
timeout and a bound on the total time spent retrying.
"""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import httpx
from azure.core.exceptions import HttpResponseError, ServiceRequestError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_delay,
    wait_fixed,
)

from .errors import RetriesExhaustedError
from .settings import Settings

__all__ = ["RetryPolicy", "NOT_FOUND_ERROR_CODES"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 404 error codes that mean the resource really is absent. Any other 404 is
# treated as an Azure glitch and retried.
NOT_FOUND_ERROR_CODES = frozenset({
    "BlobNotFound",
    "CannotVerifyCopySource",
    "ResourceNotFound",
    "ContainerNotFound",
})

_NO_SUCH_ADDRESS_MESSAGES = (
    "No such device or address",
    "Name or service not known",
    "nodename nor servname provided",
    "getaddrinfo failed",
)


def _status_and_code(exc: BaseException) -> Tuple[Optional[int], Optional[str]]:
    """Extract HTTP status and Azure error code from SDK or httpx failures."""
    if isinstance(exc, HttpResponseError):
        code = getattr(exc, "error_code", None)
        if code is None and exc.response is not None:
            code = exc.response.headers.get("x-ms-error-code")
        return exc.status_code, code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code, exc.response.headers.get("x-ms-error-code")
    return None, None


def _is_no_such_address(exc: BaseException) -> bool:
    text = str(exc)
    return any(message in text for message in _NO_SUCH_ADDRESS_MESSAGES)


class RetryPolicy:
    """
    Retries transient Azure failures until success or until the total retry
    budget is spent.

    Every attempt is bounded by ``retry_attempt_timeout_s``; attempts are
    separated by a fixed ``retry_delay_s``; after ``retry_max_total_s`` the
    policy gives up with RetriesExhaustedError. Caller cancellation is never
    retried.

    Args:
        settings: Retry configuration (timeouts, delay, optional glitch modes)
        on_retry: Observer called with the failure before every retry
    """

    def __init__(
        self,
        settings: Settings,
        *,
        on_retry: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self.max_total_s = settings.retry_max_total_s
        self.attempt_timeout_s = settings.retry_attempt_timeout_s
        self.delay_s = settings.retry_delay_s
        self.retry_on_403 = settings.retry_on_403
        self.retry_on_no_such_address = settings.retry_on_no_such_address
        self.on_retry = on_retry

    def is_transient(self, exc: BaseException) -> bool:
        """True if retrying the failed call may succeed."""
        # RetriesExhaustedError is itself a TimeoutError; a nested policy gave up
        if isinstance(exc, (asyncio.CancelledError, RetriesExhaustedError)):
            return False

        # Attempt exceeded its time slot
        if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
            return True

        status, code = _status_and_code(exc)
        if status is not None:
            if status >= 500:
                # Server errors in Blob Storage are expected to be transient
                return True
            if status == 403 and code == "AuthenticationFailed":
                return self.retry_on_403
            if status == 404 and code not in NOT_FOUND_ERROR_CODES:
                # Azure sometimes answers with an unrelated 404 that goes away
                # on retry. A genuine not-found with an unlisted code is
                # reported late, after one retry window.
                return True
            return False

        # Connection could not be established (DNS, TCP, TLS)
        if isinstance(exc, (ServiceRequestError, httpx.ConnectError, ssl.SSLError)):
            if _is_no_such_address(exc):
                return self.retry_on_no_such_address
            return True

        return False

    def _notify(self, exc: BaseException) -> None:
        logger.warning(f"Retrying after transient failure: {type(exc).__name__}: {exc}")
        if self.on_retry is not None:
            self.on_retry(exc)

    def _before_sleep(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        if exc is not None:
            self._notify(exc)

    def _exhausted(self, error: RetryError) -> RetriesExhaustedError:
        last = error.last_attempt.exception()
        return RetriesExhaustedError(
            f"Retried for more than {self.max_total_s}s without success. Last failure: {last!r}"
        )

    async def run(self, action: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``action`` until it succeeds or fails with a non-transient error.

        Args:
            action: Zero-argument callable returning a fresh awaitable per attempt

        Returns:
            The result of the first successful attempt

        Raises:
            RetriesExhaustedError: If transient failures outlast the retry budget
            Exception: Any non-transient failure raised by ``action``
        """
        retrying = AsyncRetrying(
            stop=stop_after_delay(self.max_total_s),
            wait=wait_fixed(self.delay_s),
            retry=retry_if_exception(self.is_transient),
            before_sleep=self._before_sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await asyncio.wait_for(action(), self.attempt_timeout_s)
        except RetryError as e:
            raise self._exhausted(e) from e.last_attempt.exception()
        raise AssertionError("unreachable")

    def run_sync(self, action: Callable[[], T]) -> T:
        """
        Synchronous counterpart of :meth:`run`.

        The per-attempt timeout must be enforced by ``action`` itself (the
        sync read path configures its HTTP client with it).
        """
        retrying = Retrying(
            stop=stop_after_delay(self.max_total_s),
            wait=wait_fixed(self.delay_s),
            retry=retry_if_exception(self.is_transient),
            before_sleep=self._before_sleep,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return action()
        except RetryError as e:
            raise self._exhausted(e) from e.last_attempt.exception()
        raise AssertionError("unreachable")

    async def or_false(self, action: Callable[[], Awaitable[bool]]) -> bool:
        """
        Run ``action`` once; a transient failure yields False instead of a retry.

        Used for existence probes where a false negative only costs some
        redundant work.
        """
        try:
            return await action()
        except Exception as e:
            if not self.is_transient(e):
                raise
            self._notify(e)
            return False
