from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import Any

from .constants import LOGGER
from .context import RequestContext
from .errors import ApiRequestError, ApiResult, ClassifiedError, ErrorCode
from .pipeline import RequestPipeline
from .retry import RetryPolicy, execute_with_retry

ErrorReporter = Callable[[ClassifiedError], Awaitable[None] | None]

# Writes are retried less to limit duplicate side effects.
DEFAULT_METHOD_RETRIES = {"POST": 2, "PUT": 2, "PATCH": 2, "DELETE": 1}


def build_method_policies(default_policy: RetryPolicy) -> dict[str, RetryPolicy]:
    return {
        method: replace(default_policy, max_retries=min(retries, default_policy.max_retries))
        for method, retries in DEFAULT_METHOD_RETRIES.items()
    }


class ApiClient:
    def __init__(
        self,
        pipeline: RequestPipeline,
        *,
        default_policy: RetryPolicy | None = None,
        method_policies: dict[str, RetryPolicy] | None = None,
        error_reporter: ErrorReporter | None = None,
        rate_limit_cooldown: float = 30.0,
        sleep=asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        closers: Sequence[Callable[[], Awaitable[None]]] = (),
    ) -> None:
        self.pipeline = pipeline
        self._closers = list(closers)
        self.default_policy = default_policy or RetryPolicy()
        if method_policies is None:
            method_policies = build_method_policies(self.default_policy)
        self.method_policies = {key.upper(): value for key, value in method_policies.items()}
        self._error_reporter = error_reporter
        self._rate_limit_cooldown = rate_limit_cooldown
        self._rate_limited: dict[str, float] = {}
        self._sleep = sleep
        self._clock = clock

    def policy_for(self, method: str) -> RetryPolicy:
        return self.method_policies.get(method.upper(), self.default_policy)

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        policy: RetryPolicy | None = None,
    ) -> ApiResult:
        method = method.upper()
        context = RequestContext(method=method, endpoint=path)

        if self.is_rate_limited(path):
            LOGGER.warning("Endpoint %s is cooling down after a rate limit", path)
            return ApiResult.failure(self._cooldown_error(context))

        async def operation():
            return await self.pipeline.send(
                method,
                path,
                body,
                params=params,
                headers=headers,
                context=context,
            )

        try:
            response = await execute_with_retry(
                operation,
                policy or self.policy_for(method),
                context=context,
                sleep=self._sleep,
            )
        except ApiRequestError as error:
            classified = error.error
            LOGGER.warning(
                "Request %s %s failed code=%s status=%s attempts=%s id=%s",
                method,
                path,
                classified.code.value,
                classified.status_code,
                context.retry_count + 1,
                context.request_id,
            )
            if classified.code == ErrorCode.RATE_LIMITED:
                self._rate_limited[path] = self._clock()
            await self._report(classified)
            return ApiResult.failure(classified)

        return ApiResult.ok(response.body)

    async def get(self, path: str, **kwargs) -> ApiResult:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs) -> ApiResult:
        return await self.request("POST", path, body, **kwargs)

    async def put(self, path: str, body: Any = None, **kwargs) -> ApiResult:
        return await self.request("PUT", path, body, **kwargs)

    async def patch(self, path: str, body: Any = None, **kwargs) -> ApiResult:
        return await self.request("PATCH", path, body, **kwargs)

    async def delete(self, path: str, **kwargs) -> ApiResult:
        return await self.request("DELETE", path, **kwargs)

    def is_rate_limited(self, path: str) -> bool:
        marked_at = self._rate_limited.get(path)
        if marked_at is None:
            return False
        if self._clock() - marked_at < self._rate_limit_cooldown:
            return True
        self._rate_limited.pop(path, None)
        return False

    def _cooldown_error(self, context: RequestContext) -> ClassifiedError:
        return ClassifiedError(
            code=ErrorCode.RATE_LIMITED,
            is_retryable=False,
            is_user_error=False,
            user_message="Too many requests. Please wait a moment and try again.",
            raw_details={"cooldown_seconds": self._rate_limit_cooldown},
            context=context.error_context(),
            status_code=429,
        )

    async def _report(self, error: ClassifiedError) -> None:
        if self._error_reporter is None or not error.should_report:
            return
        try:
            result = self._error_reporter(error)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Failed to report error %s", error.code.value)

    async def aclose(self) -> None:
        await self.pipeline.transport.aclose()
        for closer in self._closers:
            await closer()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
