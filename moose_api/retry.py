from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from .constants import LOGGER
from .context import RequestContext
from .errors import (
    ApiRequestError,
    ClassifiedError,
    ErrorCode,
    ErrorContext,
    TransportFailure,
    classify,
)
from .transport import TransportResponse, failure_from_httpx

T = TypeVar("T")

RetryPredicate = Callable[[ClassifiedError], bool]
RetryObserver = Callable[[ClassifiedError, int], None]


def is_retryable(error: ClassifiedError) -> bool:
    return error.is_retryable


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retry_predicate: RetryPredicate | None = None
    on_retry: RetryObserver | None = None
    # Fraction of the computed delay added at random; zero keeps delays exact.
    jitter: float = 0.0
    max_retry_after: float = 300.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must not be negative.")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be greater than 1.")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1.")

    def should_retry(self, error: ClassifiedError) -> bool:
        predicate = self.retry_predicate or is_retryable
        return bool(predicate(error))


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    error: ClassifiedError | None = None,
) -> float:
    if (
        error is not None
        and error.code == ErrorCode.RATE_LIMITED
        and error.retry_after is not None
    ):
        return error.retry_after

    delay = min(policy.base_delay * policy.backoff_multiplier**attempt, policy.max_delay)
    if policy.jitter:
        delay = min(delay + delay * policy.jitter * random.random(), policy.max_delay)
    return delay


def _retry_allowed(policy: RetryPolicy, error: ClassifiedError, attempt: int) -> bool:
    if attempt >= policy.max_retries:
        return False
    if not policy.should_retry(error):
        return False
    if error.retry_after is not None and error.retry_after > policy.max_retry_after:
        return False
    return True


def _classify_exception(
    error: Exception, context: RequestContext | None, attempt: int
) -> ClassifiedError | None:
    if isinstance(error, ApiRequestError):
        return error.error

    error_context = (
        context.error_context() if context is not None else ErrorContext(attempt=attempt)
    )
    if isinstance(error, TransportFailure):
        return classify(error, error_context)
    if isinstance(error, httpx.HTTPStatusError):
        return classify(TransportResponse.from_httpx(error.response), error_context)
    if isinstance(error, (httpx.TransportError, httpx.InvalidURL)):
        return classify(failure_from_httpx(error), error_context)
    return None


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    context: RequestContext | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    logger: logging.Logger | None = None,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    Attempts are numbered from 0; at most ``policy.max_retries + 1`` runs
    happen. The final failure is raised as :class:`ApiRequestError`.
    Exceptions that are not API failures propagate untouched.
    """
    policy = policy or RetryPolicy()
    log = logger or LOGGER
    total_attempts = policy.max_retries + 1
    attempt = 0

    while True:
        if context is not None:
            context.begin_attempt(attempt)
        try:
            return await operation()
        except Exception as failure:
            error = _classify_exception(failure, context, attempt)
            if error is None:
                raise
            if not _retry_allowed(policy, error, attempt):
                if isinstance(failure, ApiRequestError):
                    raise
                raise ApiRequestError(error) from failure

        delay = compute_delay(policy, attempt, error)
        log.warning(
            "Request failed (attempt %s/%s), retrying in %.2fs: %s %s code=%s",
            attempt + 1,
            total_attempts,
            delay,
            error.context.method,
            error.context.endpoint,
            error.code.value,
        )
        if policy.on_retry is not None:
            policy.on_retry(error, attempt + 1)
        await sleep(delay)
        attempt += 1


class RetryTransport(httpx.AsyncBaseTransport):
    """httpx transport that retries retryable statuses and connection failures."""

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        policy: RetryPolicy | None = None,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._policy = policy or RetryPolicy(max_retries=2)
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        attempt = 0
        error_context = ErrorContext(endpoint=request.url.path, method=request.method)

        while True:
            next_request = httpx.Request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                content=body,
                extensions=request.extensions,
            )
            try:
                response = await self._transport.handle_async_request(next_request)
            except httpx.TransportError as error:
                classified = classify(failure_from_httpx(error), error_context)
                if not _retry_allowed(self._policy, classified, attempt):
                    raise
            else:
                if response.status_code < 400:
                    return response
                await response.aread()
                classified = classify(TransportResponse.from_httpx(response), error_context)
                if not _retry_allowed(self._policy, classified, attempt):
                    return response
                await response.aclose()

            delay = compute_delay(self._policy, attempt, classified)
            self._logger.warning(
                "Retrying %s after %.2fs (%s %s)",
                classified.http_code or classified.code.value,
                delay,
                request.method,
                request.url,
            )
            await self._sleep(delay)
            attempt += 1

    async def aclose(self) -> None:
        await self._transport.aclose()
