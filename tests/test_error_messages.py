import pytest

from moose_api.errors import (
    ApiResult,
    ErrorCode,
    ErrorContext,
    TransportFailure,
    classify,
)
from moose_api.transport import TransportResponse


def _response(status: int, body=None, headers=None) -> TransportResponse:
    return TransportResponse(status_code=status, headers=headers or {}, body=body)


@pytest.mark.parametrize(
    ("status", "code", "retryable", "user_error"),
    [
        (500, ErrorCode.SERVER_ERROR, True, False),
        (502, ErrorCode.SERVER_ERROR, True, False),
        (503, ErrorCode.SERVER_ERROR, True, False),
        (401, ErrorCode.AUTHENTICATION_REQUIRED, False, False),
        (403, ErrorCode.PERMISSION_DENIED, False, True),
        (404, ErrorCode.NOT_FOUND, False, True),
        (408, ErrorCode.TIMEOUT, True, False),
        (409, ErrorCode.CONFLICT, False, True),
        (422, ErrorCode.VALIDATION_ERROR, False, True),
        (429, ErrorCode.RATE_LIMITED, True, False),
        (418, ErrorCode.UNKNOWN, False, False),
    ],
)
def test_status_classification(status, code, retryable, user_error) -> None:
    error = classify(_response(status))

    assert error.code == code
    assert error.is_retryable is retryable
    assert error.is_user_error is user_error
    assert error.status_code == status


@pytest.mark.parametrize(
    ("reason", "retryable"),
    [
        (ErrorCode.NETWORK_ERROR, True),
        (ErrorCode.TIMEOUT, True),
        (ErrorCode.DNS_FAILURE, True),
        (ErrorCode.CONNECTION_REFUSED, True),
        (ErrorCode.INVALID_REQUEST, False),
    ],
)
def test_transport_failure_classification(reason, retryable) -> None:
    error = classify(TransportFailure(reason, "boom"))

    assert error.code == reason
    assert error.is_retryable is retryable
    assert error.is_user_error is False
    assert error.status_code is None
    assert error.raw_details == {"reason": reason.value, "message": "boom"}


def test_transport_failure_rejects_http_codes() -> None:
    with pytest.raises(ValueError):
        TransportFailure(ErrorCode.NOT_FOUND)


def test_unknown_status_http_code() -> None:
    error = classify(_response(418))

    assert error.http_code == "HTTP_418"
    assert error.user_message == "An unexpected error occurred. Please try again."


def test_server_error_keeps_http_family_and_hides_body() -> None:
    error = classify(_response(503, body={"message": "db pool exhausted"}))

    assert error.http_code == "HTTP_503"
    assert error.user_message == "Service is temporarily unavailable. Please try again later."
    assert error.raw_details == {"message": "db pool exhausted"}
    assert error.should_report is True


def test_user_errors_are_not_reported() -> None:
    assert classify(_response(404)).should_report is False
    assert classify(TransportFailure(ErrorCode.TIMEOUT)).should_report is False


def test_body_message_used_for_user_errors() -> None:
    error = classify(_response(409, body={"message": "Vehicle already registered."}))

    assert error.user_message == "Vehicle already registered."


def test_fallback_message_without_body() -> None:
    assert classify(_response(404)).user_message == "The requested resource was not found."
    assert classify(_response(404, body="<html>")).user_message == (
        "The requested resource was not found."
    )


def test_validation_errors_are_flattened() -> None:
    error = classify(
        _response(
            422,
            body={
                "message": "Validation failed",
                "errors": {"email": ["Email is required"], "phone": "Phone is invalid"},
            },
        )
    )

    assert error.code == ErrorCode.VALIDATION_ERROR
    assert error.user_message == "Email is required, Phone is invalid"


def test_structured_400_is_validation_error() -> None:
    body = {"errors": [{"field": "plate", "message": "Plate is required"}]}

    error = classify(_response(400, body=body))

    assert error.code == ErrorCode.VALIDATION_ERROR
    assert error.user_message == "Plate is required"


def test_unstructured_400_is_bad_request() -> None:
    error = classify(_response(400, body="bad"))

    assert error.code == ErrorCode.BAD_REQUEST
    assert error.is_user_error is True
    assert error.user_message == "Invalid request. Please check your input and try again."


def test_403_ignores_server_message() -> None:
    error = classify(_response(403, body={"message": "blocked by WAF rule 17"}))

    assert error.user_message == "You do not have permission to perform this action."


def test_rate_limit_retry_after() -> None:
    error = classify(_response(429, headers={"Retry-After": "45"}))

    assert error.retry_after == 45.0
    assert error.user_message == "Too many requests. Please wait 45 seconds and try again."


def test_context_is_attached() -> None:
    context = ErrorContext(endpoint="/tickets", method="GET", attempt=2, timestamp="t")

    error = classify(_response(500), context)

    assert error.context == context


def test_classification_is_stable() -> None:
    outcome = _response(502, body={"detail": "upstream"})

    first = classify(outcome)
    second = classify(outcome)

    assert (first.code, first.is_retryable) == (second.code, second.is_retryable)
    assert first == second


def test_api_result_shape() -> None:
    failure = ApiResult.failure(classify(_response(404)))

    assert failure.to_dict() == {
        "success": False,
        "error": {"code": "NOT_FOUND", "message": "The requested resource was not found."},
    }
    assert ApiResult.ok({"id": 1}).to_dict() == {"success": True, "data": {"id": 1}}
