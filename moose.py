from __future__ import annotations

import argparse
import asyncio
import json
import sys

import httpx

from auth.credentials import CredentialStore, FileCredentialStore
from auth.refresh import RefreshCoordinator, SessionExpiredHook, get_refresh_coordinator
from auth.session_api import build_refresh_fn
from moose_api.client import ApiClient, ErrorReporter
from moose_api.constants import APP_VERSION, HTTP_METHODS, LOGGER
from moose_api.env import ClientSettings, load_env, setup_logging
from moose_api.errors import ApiResult, ClassifiedError
from moose_api.pipeline import RequestPipeline
from moose_api.retry import RetryPolicy, RetryTransport
from moose_api.transport import HttpxTransport


def default_retry_policy(settings: ClientSettings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.max_retries,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        backoff_multiplier=settings.retry_backoff_multiplier,
    )


def log_session_expired(error: ClassifiedError) -> None:
    LOGGER.warning("Session expired (%s); sign in again.", error.code.value)


def build_refresh_client(
    settings: ClientSettings,
    transport: httpx.AsyncBaseTransport | None = None,
    *,
    sleep=asyncio.sleep,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.timeout,
        transport=RetryTransport(
            transport or httpx.AsyncHTTPTransport(),
            policy=RetryPolicy(
                max_retries=min(2, settings.max_retries),
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
                backoff_multiplier=settings.retry_backoff_multiplier,
            ),
            sleep=sleep,
        ),
    )


def create_client(
    settings: ClientSettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    refresh_transport: httpx.AsyncBaseTransport | None = None,
    store: CredentialStore | None = None,
    on_session_expired: SessionExpiredHook | None = None,
    error_reporter: ErrorReporter | None = None,
    shared_coordinator: bool = False,
    sleep=asyncio.sleep,
) -> ApiClient:
    """Build an ApiClient wired to the credential store and refresh endpoint.

    With ``shared_coordinator`` the process-wide coordinator may run the
    refresh exchange on any caller's event loop, so each exchange opens its
    own refresh client instead of sharing one bound to the first loop.
    """
    if settings is None:
        load_env()
        settings = ClientSettings.from_env()
    setup_logging(settings)

    store = store or FileCredentialStore(settings.token_store_path)
    policy = default_retry_policy(settings)

    hook = on_session_expired or log_session_expired
    closers = []
    if shared_coordinator:
        refresh_fn = build_refresh_fn(
            settings.base_url,
            refresh_path=settings.refresh_path,
            client_factory=lambda: build_refresh_client(
                settings, refresh_transport, sleep=sleep
            ),
        )
        coordinator = get_refresh_coordinator(store, refresh_fn, on_session_expired=hook)
    else:
        refresh_client = build_refresh_client(settings, refresh_transport, sleep=sleep)
        closers.append(refresh_client.aclose)
        refresh_fn = build_refresh_fn(
            settings.base_url,
            refresh_path=settings.refresh_path,
            client=refresh_client,
        )
        coordinator = RefreshCoordinator(store, refresh_fn, on_session_expired=hook)

    pipeline = RequestPipeline(
        HttpxTransport(settings.base_url, timeout=settings.timeout, transport=transport),
        coordinator,
        settings=settings,
    )
    return ApiClient(
        pipeline,
        default_policy=policy,
        error_reporter=error_reporter,
        rate_limit_cooldown=settings.rate_limit_cooldown,
        sleep=sleep,
        closers=closers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moose",
        description=f"Send one authenticated request to the MooseTicket API (v{APP_VERSION}).",
    )
    parser.add_argument("method", type=str.lower, choices=sorted(HTTP_METHODS))
    parser.add_argument("path", help="API path relative to MOOSE_API_BASE_URL, e.g. /tickets")
    parser.add_argument("--data", help="JSON request body")
    return parser


async def _run_request(method: str, path: str, body) -> ApiResult:
    async with create_client() as client:
        return await client.request(method, path, body)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    body = None
    if args.data is not None:
        try:
            body = json.loads(args.data)
        except json.JSONDecodeError:
            parser.error("--data must be valid JSON.")

    result = asyncio.run(_run_request(args.method, args.path, body))
    json.dump(result.to_dict(), sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
