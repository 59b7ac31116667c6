"""Error taxonomy and classification for outbound API calls.

Every failed attempt is turned into a :class:`ClassifiedError` by
:func:`classify`. The rest of the application only ever sees the reduced
:class:`ApiResult` shape (a code and a short message); raw server and
transport details stay in ``raw_details`` and the debug log.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    DNS_FAILURE = "DNS_FAILURE"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    INVALID_REQUEST = "INVALID_REQUEST"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN = "UNKNOWN"


TRANSPORT_REASONS = {
    ErrorCode.NETWORK_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.DNS_FAILURE,
    ErrorCode.CONNECTION_REFUSED,
    ErrorCode.INVALID_REQUEST,
}

_TRANSPORT_MESSAGES = {
    ErrorCode.TIMEOUT: "Request timed out. Please try again.",
    ErrorCode.DNS_FAILURE: "Please check your internet connection and try again.",
    ErrorCode.INVALID_REQUEST: "The request could not be sent. Please try again later.",
}
_DEFAULT_TRANSPORT_MESSAGE = (
    "Unable to connect to the server. Please check your internet connection."
)

_STATUS_MESSAGES = {
    400: "Invalid request. Please check your input and try again.",
    401: "Your session has expired. Please sign in again.",
    403: "You do not have permission to perform this action.",
    404: "The requested resource was not found.",
    408: "Request timed out. Please try again.",
    409: "This action conflicts with existing data.",
    422: "Please check your input and try again.",
    429: "Too many requests. Please wait a moment and try again.",
    500: "A server error occurred. Please try again later.",
    502: "Server is temporarily unavailable. Please try again later.",
    503: "Service is temporarily unavailable. Please try again later.",
    504: "Request timed out. Please try again.",
}
_SERVER_ERROR_MESSAGE = "A server error occurred. Please try again later."
_UNKNOWN_MESSAGE = "An unexpected error occurred. Please try again."

SESSION_EXPIRED_MESSAGE = _STATUS_MESSAGES[401]
NO_REFRESH_TOKEN_MESSAGE = "You need to sign in to access this feature."


@dataclass(frozen=True)
class ErrorContext:
    endpoint: str = "unknown"
    method: str = "unknown"
    attempt: int = 0
    timestamp: str = ""
    request_id: str | None = None


@dataclass(frozen=True)
class ClassifiedError:
    code: ErrorCode
    is_retryable: bool
    is_user_error: bool
    user_message: str
    raw_details: Any = None
    context: ErrorContext = field(default_factory=ErrorContext)
    status_code: int | None = None
    retry_after: float | None = None

    @property
    def http_code(self) -> str | None:
        if self.status_code is None:
            return None
        return f"HTTP_{self.status_code}"

    @property
    def should_report(self) -> bool:
        """Server faults go to external monitoring; user errors never do."""
        if self.is_user_error or self.status_code is None:
            return False
        return self.status_code >= 500


class ApiRequestError(RuntimeError):
    def __init__(self, error: ClassifiedError) -> None:
        super().__init__(f"{error.code.value}: {error.user_message}")
        self.error = error
        self.status_code = error.status_code


class TransportFailure(RuntimeError):
    """Raised by a transport when no HTTP response was received."""

    def __init__(self, reason: ErrorCode, detail: str = "") -> None:
        if reason not in TRANSPORT_REASONS:
            raise ValueError(f"{reason!r} is not a transport failure reason.")
        super().__init__(detail or reason.value)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class ApiErrorPayload:
    code: str
    message: str


@dataclass(frozen=True)
class ApiResult:
    success: bool
    data: Any = None
    error: ApiErrorPayload | None = None

    @classmethod
    def ok(cls, data: Any) -> "ApiResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: ClassifiedError) -> "ApiResult":
        return cls(
            success=False,
            error=ApiErrorPayload(code=error.code.value, message=error.user_message),
        )

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = {"code": self.error.code, "message": self.error.message}
        return payload


def auth_error(
    code: ErrorCode = ErrorCode.AUTHENTICATION_REQUIRED,
    *,
    context: ErrorContext | None = None,
    raw_details: Any = None,
) -> ClassifiedError:
    if code == ErrorCode.NO_REFRESH_TOKEN:
        return ClassifiedError(
            code=code,
            is_retryable=False,
            is_user_error=True,
            user_message=NO_REFRESH_TOKEN_MESSAGE,
            raw_details=raw_details,
            context=context or ErrorContext(),
        )
    return ClassifiedError(
        code=ErrorCode.AUTHENTICATION_REQUIRED,
        is_retryable=False,
        is_user_error=False,
        user_message=SESSION_EXPIRED_MESSAGE,
        raw_details=raw_details,
        context=context or ErrorContext(),
        status_code=401,
    )


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def parse_retry_after(headers: Mapping[str, str] | None) -> float | None:
    raw = _header(headers, "retry-after") or _header(headers, "x-ratelimit-reset")
    if raw is None:
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    # Large values are reset timestamps rather than relative delays.
    if value > 1_000_000_000:
        return max(0.0, value - time.time())
    return max(0.0, value)


def _body_message(body: Any) -> str | None:
    if not isinstance(body, Mapping):
        return None
    message = body.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


def _validation_messages(body: Any) -> str | None:
    if not isinstance(body, Mapping):
        return None
    errors = body.get("errors")
    if isinstance(errors, Mapping):
        items: list = list(errors.values())
    elif isinstance(errors, list):
        items = errors
    else:
        return None

    messages: list[str] = []
    for item in items:
        values = item if isinstance(item, list) else [item]
        for value in values:
            if isinstance(value, Mapping):
                value = value.get("message")
            if isinstance(value, str) and value.strip():
                messages.append(value.strip())
    if not messages:
        return None
    return ", ".join(messages)


def _is_structured(body: Any) -> bool:
    return _validation_messages(body) is not None or _body_message(body) is not None


def _classify_failure(failure: TransportFailure, context: ErrorContext) -> ClassifiedError:
    return ClassifiedError(
        code=failure.reason,
        is_retryable=failure.reason != ErrorCode.INVALID_REQUEST,
        is_user_error=False,
        user_message=_TRANSPORT_MESSAGES.get(failure.reason, _DEFAULT_TRANSPORT_MESSAGE),
        raw_details={"reason": failure.reason.value, "message": str(failure)},
        context=context,
    )


def _classify_status(
    status: int,
    headers: Mapping[str, str] | None,
    body: Any,
    context: ErrorContext,
) -> ClassifiedError:
    def build(code: ErrorCode, retryable: bool, user_error: bool, message: str, **extra):
        return ClassifiedError(
            code=code,
            is_retryable=retryable,
            is_user_error=user_error,
            user_message=message,
            raw_details=body,
            context=context,
            status_code=status,
            **extra,
        )

    if status >= 500:
        return build(
            ErrorCode.SERVER_ERROR,
            True,
            False,
            _STATUS_MESSAGES.get(status, _SERVER_ERROR_MESSAGE),
        )
    if status == 401:
        return build(ErrorCode.AUTHENTICATION_REQUIRED, False, False, SESSION_EXPIRED_MESSAGE)
    if status == 403:
        return build(ErrorCode.PERMISSION_DENIED, False, True, _STATUS_MESSAGES[403])
    if status == 408:
        return build(ErrorCode.TIMEOUT, True, False, _STATUS_MESSAGES[408])
    if status == 429:
        retry_after = parse_retry_after(headers)
        message = _STATUS_MESSAGES[429]
        if retry_after is not None:
            message = (
                f"Too many requests. Please wait {int(retry_after)} seconds and try again."
            )
        return build(ErrorCode.RATE_LIMITED, True, False, message, retry_after=retry_after)
    if status in (400, 422):
        code = ErrorCode.VALIDATION_ERROR
        if status == 400 and not _is_structured(body):
            code = ErrorCode.BAD_REQUEST
        message = (
            _validation_messages(body) or _body_message(body) or _STATUS_MESSAGES[status]
        )
        return build(code, False, True, message)
    if status == 404:
        return build(
            ErrorCode.NOT_FOUND, False, True, _body_message(body) or _STATUS_MESSAGES[404]
        )
    if status == 409:
        return build(
            ErrorCode.CONFLICT, False, True, _body_message(body) or _STATUS_MESSAGES[409]
        )
    return build(ErrorCode.UNKNOWN, False, False, _UNKNOWN_MESSAGE)


def classify(outcome: Any, context: ErrorContext | None = None) -> ClassifiedError:
    """Map a transport failure or an HTTP response onto the error taxonomy.

    ``outcome`` is either a :class:`TransportFailure` or any object with
    ``status_code``, ``headers`` and ``body`` attributes (a
    ``TransportResponse``). The function has no side effects.
    """
    context = context or ErrorContext()
    if isinstance(outcome, TransportFailure):
        return _classify_failure(outcome, context)
    return _classify_status(
        int(outcome.status_code),
        getattr(outcome, "headers", None),
        getattr(outcome, "body", None),
        context,
    )
