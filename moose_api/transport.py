from __future__ import annotations

import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import ErrorCode, TransportFailure

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)


@dataclass
class TransportResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "TransportResponse":
        body: Any = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = response.text
        return cls(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=body,
        )


def _is_dns_failure(error: BaseException) -> bool:
    current: BaseException | None = error
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        message = str(current).lower()
        if any(marker in message for marker in _DNS_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def failure_from_httpx(error: Exception) -> TransportFailure:
    if isinstance(error, httpx.TimeoutException):
        reason = ErrorCode.TIMEOUT
    elif isinstance(error, (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL)):
        reason = ErrorCode.INVALID_REQUEST
    elif isinstance(error, httpx.ConnectError):
        reason = ErrorCode.DNS_FAILURE if _is_dns_failure(error) else ErrorCode.CONNECTION_REFUSED
    else:
        reason = ErrorCode.NETWORK_ERROR
    return TransportFailure(reason, str(error) or type(error).__name__)


class Transport(ABC):
    """One HTTP exchange: a response for any status, or a TransportFailure."""

    @abstractmethod
    async def execute(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any = None,
        timeout: float | None = None,
        *,
        params: dict[str, Any] | None = None,
    ) -> TransportResponse:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpxTransport(Transport):
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._own_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        )

    async def execute(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any = None,
        timeout: float | None = None,
        *,
        params: dict[str, Any] | None = None,
    ) -> TransportResponse:
        content: Any = None
        json_body: Any = None
        if isinstance(body, (bytes, str)):
            content = body
        elif body is not None:
            json_body = body

        try:
            response = await self._client.request(
                method.upper(),
                url,
                headers=headers,
                params=params,
                content=content,
                json=json_body,
                timeout=httpx.USE_CLIENT_DEFAULT if timeout is None else timeout,
            )
        except (httpx.TransportError, httpx.InvalidURL) as error:
            raise failure_from_httpx(error) from error

        return TransportResponse.from_httpx(response)

    async def aclose(self) -> None:
        if self._own_client:
            await self._client.aclose()
