from __future__ import annotations

from collections.abc import Awaitable, Callable

import httpx

from auth.credentials import CredentialPair
from moose_api.constants import DEFAULT_REFRESH_PATH, ERROR_BODY_LOG_LIMIT
from moose_api.transport import failure_from_httpx

RefreshFn = Callable[[str], Awaitable[CredentialPair]]


class RefreshError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, body=None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


async def refresh_session(
    base_url: str,
    refresh_token: str,
    *,
    refresh_path: str = DEFAULT_REFRESH_PATH,
    client: httpx.AsyncClient | None = None,
    now: float | None = None,
) -> CredentialPair:
    own_client = client is None
    http_client = client or httpx.AsyncClient()
    url = f"{base_url.rstrip('/')}{refresh_path}"

    try:
        response = await http_client.post(url, json={"refreshToken": refresh_token})
        response.raise_for_status()
    except httpx.HTTPStatusError as error:
        detail = error.response.text[:ERROR_BODY_LOG_LIMIT]
        raise RefreshError(
            f"Token refresh failed with status {error.response.status_code}: {detail}",
            status_code=error.response.status_code,
            body=detail,
        ) from error
    except (httpx.TransportError, httpx.InvalidURL) as error:
        raise failure_from_httpx(error) from error
    finally:
        if own_client:
            await http_client.aclose()

    try:
        payload = response.json()
    except ValueError as error:
        raise RefreshError("Token refresh response is not JSON.") from error

    if not isinstance(payload, dict):
        raise RefreshError("Token refresh response must be a JSON object.")
    if payload.get("success") is False:
        raise RefreshError(
            f"Token refresh rejected: {payload.get('message', 'unknown reason')}",
            status_code=response.status_code,
        )

    data = payload.get("data", payload)
    try:
        return CredentialPair.from_payload(data, now=now)
    except RuntimeError as error:
        raise RefreshError(f"Invalid token refresh response format: {error}") from error


def build_refresh_fn(
    base_url: str,
    *,
    refresh_path: str = DEFAULT_REFRESH_PATH,
    client: httpx.AsyncClient | None = None,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> RefreshFn:
    """Bind `refresh_session` to a base URL.

    ``client_factory`` builds a fresh client per exchange, for refresh
    functions called from more than one event loop.
    """

    async def _refresh(refresh_token: str) -> CredentialPair:
        if client_factory is not None:
            async with client_factory() as http_client:
                return await refresh_session(
                    base_url,
                    refresh_token,
                    refresh_path=refresh_path,
                    client=http_client,
                )
        return await refresh_session(
            base_url,
            refresh_token,
            refresh_path=refresh_path,
            client=client,
        )

    return _refresh
