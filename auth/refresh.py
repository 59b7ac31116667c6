"""Single-flight credential refresh.

However many requests discover an expired access token at the same time,
one refresh exchange runs and every caller receives its outcome. The
coordinator state is guarded by a ``threading.Lock`` so the guarantee holds
for asyncio tasks and for threads running their own event loops alike.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable

from auth.credentials import CredentialPair, CredentialStore
from auth.session_api import RefreshFn
from moose_api.constants import LOGGER
from moose_api.errors import (
    ApiRequestError,
    ClassifiedError,
    ErrorCode,
    TransportFailure,
    auth_error,
    classify,
)

SessionExpiredHook = Callable[[ClassifiedError], Awaitable[None] | None]


class RefreshCoordinator:
    def __init__(
        self,
        store: CredentialStore,
        refresh_fn: RefreshFn,
        *,
        on_session_expired: SessionExpiredHook | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._refresh_fn = refresh_fn
        self._logger = logger or LOGGER
        self._hooks: list[SessionExpiredHook] = []
        if on_session_expired is not None:
            self._hooks.append(on_session_expired)

        self._lock = threading.Lock()
        self._in_flight = False
        self._waiters: list[concurrent.futures.Future] = []
        self._task: asyncio.Task | None = None
        self.refresh_count = 0

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    @property
    def pending_waiters(self) -> int:
        with self._lock:
            return len(self._waiters)

    def add_session_expired_hook(self, hook: SessionExpiredHook) -> None:
        self._hooks.append(hook)

    async def refresh(self, stale_access_token: str | None = None) -> CredentialPair:
        """Return fresh credentials, joining an in-flight refresh if there is one.

        ``stale_access_token`` is the token the caller was rejected with. When
        the store already holds a different token, a refresh has settled in
        the meantime and that pair is returned without a new exchange.

        Raises ApiRequestError (AUTHENTICATION_REQUIRED or NO_REFRESH_TOKEN).
        """
        waiter: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            initiator = not self._in_flight
            self._in_flight = True
            self._waiters.append(waiter)
            position = len(self._waiters)

        if not initiator:
            self._logger.info("Waiting for in-flight credential refresh (position %s)", position)
            # A cancelled waiter only cancels its own future.
            return await asyncio.wrap_future(waiter)

        task = asyncio.get_running_loop().create_task(self._run(stale_access_token))
        self._task = task
        try:
            return await asyncio.wrap_future(waiter)
        except asyncio.CancelledError:
            # The exchange runs on this loop; hold it until it settles.
            await _wait_uncancelled(task)
            raise

    async def _run(self, stale_access_token: str | None) -> None:
        try:
            pair = await self._exchange(stale_access_token)
        except asyncio.CancelledError:
            failure = TransportFailure(ErrorCode.NETWORK_ERROR, "Credential refresh was cancelled.")
            self._settle(error=ApiRequestError(classify(failure)))
            raise
        except ApiRequestError as error:
            await self._fail(error)
        except Exception as error:
            self._logger.exception("Credential refresh failed unexpectedly")
            failure = ApiRequestError(
                auth_error(raw_details={"type": type(error).__name__, "message": str(error)})
            )
            failure.__cause__ = error
            await self._fail(failure)
        else:
            self._logger.info("Credential refresh succeeded; new expiry %s", pair.expires_at)
            self._settle(pair=pair)

    async def _exchange(self, stale_access_token: str | None) -> CredentialPair:
        current = await self._store.get()
        if (
            stale_access_token is not None
            and current is not None
            and current.access_token != stale_access_token
        ):
            self._logger.info("Credentials already refreshed; reusing stored pair")
            return current

        if current is None or not current.refresh_token:
            self._logger.warning("No refresh token available; re-authentication required")
            raise ApiRequestError(auth_error(ErrorCode.NO_REFRESH_TOKEN))

        self.refresh_count += 1
        self._logger.info("Refreshing credentials (exchange #%s)", self.refresh_count)
        try:
            pair = await self._refresh_fn(current.refresh_token)
        except Exception as error:
            self._logger.warning("Credential refresh failed: %s", error)
            raise ApiRequestError(
                auth_error(raw_details={"type": type(error).__name__, "message": str(error)})
            ) from error

        await self._store.set(pair)
        return pair

    async def _fail(self, error: ApiRequestError) -> None:
        # An unrecoverable refresh ends the session.
        try:
            try:
                await self._store.delete()
            except Exception:
                self._logger.exception("Failed to clear credentials after refresh failure")
            for hook in list(self._hooks):
                try:
                    result = hook(error.error)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._logger.exception("Session expiry hook failed")
        finally:
            self._settle(error=error)

    def _settle(
        self,
        *,
        pair: CredentialPair | None = None,
        error: BaseException | None = None,
    ) -> None:
        with self._lock:
            waiters = self._waiters
            self._waiters = []
            self._in_flight = False
            self._task = None

        for waiter in waiters:
            if not waiter.set_running_or_notify_cancel():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(pair)


async def _wait_uncancelled(task: asyncio.Task) -> None:
    while not task.done():
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            continue


_default_coordinator: RefreshCoordinator | None = None
_default_lock = threading.Lock()


def get_refresh_coordinator(
    store: CredentialStore | None = None,
    refresh_fn: RefreshFn | None = None,
    **kwargs,
) -> RefreshCoordinator:
    """Process-wide coordinator, created on first use."""
    global _default_coordinator
    with _default_lock:
        if _default_coordinator is None:
            if store is None or refresh_fn is None:
                raise RuntimeError(
                    "The refresh coordinator needs a credential store and refresh function "
                    "on first use."
                )
            _default_coordinator = RefreshCoordinator(store, refresh_fn, **kwargs)
        return _default_coordinator


def reset_refresh_coordinator() -> None:
    global _default_coordinator
    with _default_lock:
        _default_coordinator = None
