import json
import socket

import httpx
import pytest

from moose_api.errors import ErrorCode, TransportFailure
from moose_api.transport import HttpxTransport, failure_from_httpx
from tests.api_helpers import BASE_URL


@pytest.mark.asyncio
async def test_json_request_and_response(httpx_mock) -> None:
    httpx_mock.add_response(
        url=f"{BASE_URL}/tickets?status=open",
        method="POST",
        status_code=201,
        json={"id": 12},
        headers={"X-RateLimit-Remaining": "99"},
    )
    transport = HttpxTransport(BASE_URL)

    response = await transport.execute(
        "post",
        "/tickets",
        {"Authorization": "Bearer access"},
        {"plate": "ABC123"},
        params={"status": "open"},
    )
    await transport.aclose()

    assert response.status_code == 201
    assert response.body == {"id": 12}
    assert response.headers["x-ratelimit-remaining"] == "99"
    request = httpx_mock.get_request()
    assert request.headers["Authorization"] == "Bearer access"
    assert json.loads(request.content) == {"plate": "ABC123"}


@pytest.mark.asyncio
async def test_error_status_is_a_response(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/tickets/9", status_code=404, text="not here")
    transport = HttpxTransport(BASE_URL)

    response = await transport.execute("GET", "/tickets/9", {})
    await transport.aclose()

    assert response.status_code == 404
    assert response.is_success is False
    assert response.body == "not here"


@pytest.mark.asyncio
async def test_empty_body(httpx_mock) -> None:
    httpx_mock.add_response(url=f"{BASE_URL}/vehicles/3", method="DELETE", status_code=204)
    transport = HttpxTransport(BASE_URL)

    response = await transport.execute("DELETE", "/vehicles/3", {})
    await transport.aclose()

    assert response.is_success is True
    assert response.body is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("exception", "reason"),
    [
        (httpx.ConnectTimeout("timed out"), ErrorCode.TIMEOUT),
        (httpx.ReadTimeout("timed out"), ErrorCode.TIMEOUT),
        (httpx.ConnectError("[Errno 111] Connection refused"), ErrorCode.CONNECTION_REFUSED),
        (
            httpx.ConnectError("[Errno -2] Name or service not known"),
            ErrorCode.DNS_FAILURE,
        ),
        (httpx.ReadError("connection reset by peer"), ErrorCode.NETWORK_ERROR),
        (httpx.RemoteProtocolError("peer closed connection"), ErrorCode.NETWORK_ERROR),
    ],
)
async def test_transport_errors_become_failures(httpx_mock, exception, reason) -> None:
    httpx_mock.add_exception(exception)
    transport = HttpxTransport(BASE_URL)

    with pytest.raises(TransportFailure) as raised:
        await transport.execute("GET", "/tickets", {})
    await transport.aclose()

    assert raised.value.reason == reason


def test_unsupported_protocol_is_invalid_request() -> None:
    failure = failure_from_httpx(httpx.UnsupportedProtocol("unsupported protocol"))

    assert failure.reason == ErrorCode.INVALID_REQUEST


def test_dns_failure_found_in_cause_chain() -> None:
    error = httpx.ConnectError("connection failed")
    error.__cause__ = socket.gaierror(-2, "Name or service not known")

    assert failure_from_httpx(error).reason == ErrorCode.DNS_FAILURE


@pytest.mark.asyncio
async def test_shared_client_is_not_closed() -> None:
    client = httpx.AsyncClient(base_url=BASE_URL)
    transport = HttpxTransport(BASE_URL, client=client)

    await transport.aclose()

    assert client.is_closed is False
    await client.aclose()
