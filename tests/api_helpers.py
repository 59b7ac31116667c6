import asyncio

from auth.credentials import CredentialPair, MemoryCredentialStore
from auth.refresh import RefreshCoordinator
from moose_api.env import ClientSettings
from moose_api.errors import ErrorCode, TransportFailure
from moose_api.pipeline import RequestPipeline
from moose_api.transport import Transport, TransportResponse

BASE_URL = "https://api.mooseticket.test/api"
EXPIRED = CredentialPair("access-1", "refresh-1", 0.0)
RENEWED = CredentialPair("access-2", "refresh-2", 4102444800.0)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedTransport(Transport):
    """Answers each call from ``responder(method, path, headers)``.

    The responder returns a TransportResponse, a status code, or raises
    TransportFailure.
    """

    def __init__(self, responder) -> None:
        self.responder = responder
        self.calls: list[dict] = []
        self.closed = False

    async def execute(self, method, url, headers, body=None, timeout=None, *, params=None):
        self.calls.append(
            {"method": method, "path": url, "headers": headers, "body": body, "params": params}
        )
        await asyncio.sleep(0)
        outcome = self.responder(method, url, headers)
        if isinstance(outcome, int):
            return TransportResponse(status_code=outcome, body={"status": outcome})
        return outcome

    async def aclose(self) -> None:
        self.closed = True


def token_gated(valid_token: str = "access-2"):
    """Responder that accepts only ``valid_token``."""

    def responder(method, path, headers):
        if headers.get("Authorization") == f"Bearer {valid_token}":
            return TransportResponse(status_code=200, body={"path": path})
        return TransportResponse(status_code=401, body={"message": "jwt expired"})

    return responder


def refusing(method, path, headers):
    raise TransportFailure(ErrorCode.CONNECTION_REFUSED, "[Errno 111] Connection refused")


class CountingRefresh:
    def __init__(self, result: CredentialPair = RENEWED, error: Exception | None = None) -> None:
        self.calls: list[str] = []
        self.result = result
        self.error = error

    async def __call__(self, refresh_token: str) -> CredentialPair:
        self.calls.append(refresh_token)
        await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        return self.result


def build_pipeline(
    responder,
    *,
    pair: CredentialPair | None = EXPIRED,
    refresh_fn=None,
    settings: ClientSettings | None = None,
    **pipeline_kwargs,
):
    store = MemoryCredentialStore(pair)
    refresh_fn = refresh_fn or CountingRefresh()
    coordinator = RefreshCoordinator(store, refresh_fn)
    transport = ScriptedTransport(responder)
    pipeline = RequestPipeline(
        transport,
        coordinator,
        settings=settings or ClientSettings(base_url=BASE_URL, refresh_buffer_seconds=-1),
        **pipeline_kwargs,
    )
    return pipeline, transport, refresh_fn, store
