from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import ErrorContext


class RequestState(str, Enum):
    UNSENT = "unsent"
    SENT = "sent"
    AUTH_RETRY_PENDING = "auth_retry_pending"
    SUCCEEDED = "succeeded"
    CLASSIFIED = "classified"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RequestContext:
    """Correlation data for one logical call, shared by all of its attempts."""

    method: str = "GET"
    endpoint: str = "unknown"
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=_utc_timestamp)
    retry_count: int = 0
    state: RequestState = RequestState.UNSENT
    auth_retried: bool = False

    def transition(self, state: RequestState) -> None:
        if state == RequestState.AUTH_RETRY_PENDING:
            if self.auth_retried:
                raise RuntimeError("Only one authentication retry is allowed per call.")
            self.auth_retried = True
        self.state = state

    def begin_attempt(self, attempt: int) -> None:
        # auth_retried spans the whole call, not one attempt.
        self.retry_count = attempt
        self.state = RequestState.UNSENT

    def error_context(self) -> ErrorContext:
        return ErrorContext(
            endpoint=self.endpoint,
            method=self.method.upper(),
            attempt=self.retry_count,
            timestamp=_utc_timestamp(),
            request_id=self.request_id,
        )
