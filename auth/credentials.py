from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from moose_api.constants import DEFAULT_TOKEN_LIFETIME_SECONDS, DEFAULT_TOKEN_STORE_PATH


def _parse_expiry(raw, now: float) -> float:
    if raw is None:
        return now + DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(raw, bool):
        raise RuntimeError("Token response expiresAt must be a timestamp.")
    if isinstance(raw, (int, float)):
        # Millisecond epochs come from JavaScript backends.
        return raw / 1000 if raw > 10_000_000_000 else float(raw)
    if isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError as error:
            raise RuntimeError(f"Token response expiresAt is not a timestamp: {raw!r}") from error
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise RuntimeError("Token response expiresAt must be a timestamp.")


@dataclass(frozen=True)
class CredentialPair:
    access_token: str
    refresh_token: str
    expires_at: float

    def is_expired(self, buffer_seconds: float = 0.0, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current + buffer_seconds >= self.expires_at

    @classmethod
    def from_payload(cls, payload: dict, *, now: float | None = None) -> "CredentialPair":
        """Parse the ``data`` object of a sign-in or refresh response.

        Both ``{"tokens": {"accessToken", "refreshToken"}}`` and the legacy
        flat ``{"token", "refreshToken"}`` shapes are accepted.
        """
        if not isinstance(payload, dict):
            raise RuntimeError("Token response data must be a JSON object.")

        tokens = payload.get("tokens")
        if not isinstance(tokens, dict):
            tokens = {}
        access_token = tokens.get("accessToken") or payload.get("token")
        refresh_token = tokens.get("refreshToken") or payload.get("refreshToken")

        if not isinstance(access_token, str) or not access_token:
            raise RuntimeError("Token response missing access token.")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise RuntimeError("Token response missing refresh token.")

        current = time.time() if now is None else now
        expires_in = payload.get("expiresIn")
        if isinstance(expires_in, int) and not isinstance(expires_in, bool):
            expires_at = current + expires_in
        else:
            expires_at = _parse_expiry(payload.get("expiresAt"), current)

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )


class CredentialStore(ABC):
    """Durable home of the current CredentialPair.

    ``set`` replaces the whole pair at once; readers never observe a new
    access token next to an old refresh token.
    """

    @abstractmethod
    async def get(self) -> CredentialPair | None:
        raise NotImplementedError

    @abstractmethod
    async def set(self, pair: CredentialPair) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    def __init__(self, pair: CredentialPair | None = None) -> None:
        self._lock = threading.Lock()
        self._pair = pair

    async def get(self) -> CredentialPair | None:
        with self._lock:
            return self._pair

    async def set(self, pair: CredentialPair) -> None:
        with self._lock:
            self._pair = pair

    async def delete(self) -> None:
        with self._lock:
            self._pair = None


class FileCredentialStore(CredentialStore):
    def __init__(self, path: str | Path = DEFAULT_TOKEN_STORE_PATH) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    async def get(self) -> CredentialPair | None:
        with self._lock:
            payload = self._read()
        if payload is None:
            return None
        try:
            return CredentialPair(**payload)
        except TypeError as error:
            raise RuntimeError("Credential store file has unexpected fields.") from error

    async def set(self, pair: CredentialPair) -> None:
        with self._lock:
            self._write(asdict(pair))

    async def delete(self) -> None:
        with self._lock:
            if self._path.exists():
                self._path.unlink()

    def _read(self) -> dict | None:
        if not self._path.exists():
            return None

        raw = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise RuntimeError("Credential store file is invalid; expected top-level JSON object.")
        return raw

    def _write(self, payload: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
