from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .constants import ERROR_BODY_LOG_LIMIT, LOGGER
from .context import RequestContext, RequestState
from .env import ClientSettings
from .errors import ApiRequestError, TransportFailure, auth_error, classify
from .transport import Transport, TransportResponse

if TYPE_CHECKING:
    from auth.credentials import CredentialStore
    from auth.refresh import RefreshCoordinator


@dataclass
class OutboundRequest:
    method: str
    path: str
    body: Any = None
    params: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    access_token: str | None = None

    def attach_token(self, access_token: str | None) -> None:
        self.access_token = access_token
        if access_token:
            self.headers["Authorization"] = f"Bearer {access_token}"
        else:
            self.headers.pop("Authorization", None)


RequestStage = Callable[[OutboundRequest, RequestContext], Awaitable[None]]
ResponseStage = Callable[[TransportResponse, OutboundRequest, RequestContext], Awaitable[None]]


def context_headers_stage(settings: ClientSettings) -> RequestStage:
    async def attach_context_headers(request: OutboundRequest, context: RequestContext) -> None:
        request.headers.setdefault("Content-Type", "application/json")
        request.headers.setdefault("Accept", "application/json")
        request.headers["X-Platform"] = settings.platform
        request.headers["X-Platform-Version"] = settings.platform_version
        request.headers["X-App-Version"] = settings.app_version
        request.headers["X-Request-ID"] = context.request_id
        request.headers["X-Request-Timestamp"] = context.timestamp

    return attach_context_headers


def credentials_stage(
    store: "CredentialStore",
    coordinator: "RefreshCoordinator | None" = None,
    *,
    refresh_buffer_seconds: float = -1,
) -> RequestStage:
    """Attach the stored access token, refreshing first when it is about to expire.

    A missing token is not an error; the request then goes out
    unauthenticated. A negative buffer disables proactive refresh.
    """

    async def attach_credentials(request: OutboundRequest, context: RequestContext) -> None:
        pair = await store.get()
        if (
            pair is not None
            and coordinator is not None
            and refresh_buffer_seconds >= 0
            and pair.is_expired(refresh_buffer_seconds)
        ):
            LOGGER.info("Access token expiring soon; refreshing before %s", request.path)
            try:
                pair = await coordinator.refresh(stale_access_token=pair.access_token)
            except ApiRequestError as error:
                raise ApiRequestError(
                    auth_error(
                        context=context.error_context(),
                        raw_details={"refresh_error": error.error.code.value},
                    )
                ) from error
        request.attach_token(pair.access_token if pair is not None else None)

    return attach_credentials


def request_logging_stage(enabled: bool, logger: logging.Logger | None = None) -> RequestStage:
    log = logger or LOGGER

    async def log_request(request: OutboundRequest, context: RequestContext) -> None:
        if not enabled:
            return
        log.info(
            "API request %s %s id=%s attempt=%s authenticated=%s",
            request.method,
            request.path,
            context.request_id,
            context.retry_count + 1,
            request.access_token is not None,
        )

    return log_request


async def handle_rate_limits(
    response: TransportResponse, request: OutboundRequest, context: RequestContext
) -> None:
    headers = {key.lower(): value for key, value in response.headers.items()}
    remaining = headers.get("x-ratelimit-remaining")
    reset = headers.get("x-ratelimit-reset") or headers.get("retry-after")

    if remaining is not None or reset is not None:
        LOGGER.debug(
            "Rate limit state endpoint=%s remaining=%s reset=%s",
            request.path,
            remaining,
            reset,
        )

    if response.status_code == 429 or remaining == "0":
        LOGGER.warning(
            "Rate limit warning endpoint=%s status=%s remaining=%s reset=%s id=%s",
            request.path,
            response.status_code,
            remaining,
            reset,
            context.request_id,
        )


def response_logging_stage(enabled: bool, logger: logging.Logger | None = None) -> ResponseStage:
    log = logger or LOGGER

    async def log_response(
        response: TransportResponse, request: OutboundRequest, context: RequestContext
    ) -> None:
        if not enabled:
            return
        log.info(
            "API response %s %s -> %s id=%s",
            request.method,
            request.path,
            response.status_code,
            context.request_id,
        )
        if response.status_code >= 400 and response.body is not None:
            text = str(response.body)
            if len(text) > ERROR_BODY_LOG_LIMIT:
                text = text[:ERROR_BODY_LOG_LIMIT] + "...<truncated>"
            log.warning("API error body id=%s: %s", context.request_id, text)

    return log_response


class RequestPipeline:
    """The authenticated entry point for every outbound call.

    Runs the request stages, sends through the transport, and on a 401 for
    an authenticated request asks the refresh coordinator for new
    credentials before resending exactly once. Failures are raised as
    ApiRequestError carrying a ClassifiedError.
    """

    def __init__(
        self,
        transport: Transport,
        coordinator: "RefreshCoordinator",
        *,
        settings: ClientSettings | None = None,
        request_stages: Sequence[RequestStage] | None = None,
        response_stages: Sequence[ResponseStage] | None = None,
    ) -> None:
        self.transport = transport
        self.coordinator = coordinator
        self.settings = settings or ClientSettings()

        if request_stages is None:
            request_stages = [
                context_headers_stage(self.settings),
                credentials_stage(
                    coordinator.store,
                    coordinator,
                    refresh_buffer_seconds=self.settings.refresh_buffer_seconds,
                ),
                request_logging_stage(self.settings.debug),
            ]
        if response_stages is None:
            response_stages = [
                handle_rate_limits,
                response_logging_stage(self.settings.debug),
            ]
        self.request_stages: list[RequestStage] = list(request_stages)
        self.response_stages: list[ResponseStage] = list(response_stages)

    async def send(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        context: RequestContext | None = None,
    ) -> TransportResponse:
        context = context or RequestContext(method=method.upper(), endpoint=path)
        request = OutboundRequest(
            method=method.upper(),
            path=path,
            body=body,
            params=params,
            headers=dict(headers or {}),
            timeout=self.settings.timeout if timeout is None else timeout,
        )
        for stage in self.request_stages:
            await stage(request, context)

        response = await self._dispatch(request, context)

        if (
            response.status_code == 401
            and request.access_token is not None
            and not context.auth_retried
        ):
            context.transition(RequestState.AUTH_RETRY_PENDING)
            try:
                pair = await self.coordinator.refresh(stale_access_token=request.access_token)
            except ApiRequestError as error:
                context.transition(RequestState.CLASSIFIED)
                raise ApiRequestError(
                    auth_error(
                        context=context.error_context(),
                        raw_details={"refresh_error": error.error.code.value},
                    )
                ) from error
            request.attach_token(pair.access_token)
            response = await self._dispatch(request, context)

        if response.is_success:
            context.transition(RequestState.SUCCEEDED)
            return response

        context.transition(RequestState.CLASSIFIED)
        raise ApiRequestError(classify(response, context.error_context()))

    async def _dispatch(
        self, request: OutboundRequest, context: RequestContext
    ) -> TransportResponse:
        context.transition(RequestState.SENT)
        try:
            response = await self.transport.execute(
                request.method,
                request.path,
                dict(request.headers),
                request.body,
                request.timeout,
                params=request.params,
            )
        except TransportFailure as failure:
            context.transition(RequestState.CLASSIFIED)
            raise ApiRequestError(classify(failure, context.error_context())) from failure

        for stage in self.response_stages:
            await stage(response, request, context)
        return response
