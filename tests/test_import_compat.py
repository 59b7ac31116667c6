import moose


EXPECTED_MOOSE_EXPORTS = (
    "APP_VERSION",
    "HTTP_METHODS",
    "ApiClient",
    "RefreshCoordinator",
    "RequestPipeline",
    "RetryPolicy",
    "RetryTransport",
    "HttpxTransport",
    "FileCredentialStore",
    "build_refresh_fn",
    "get_refresh_coordinator",
    "load_env",
    "setup_logging",
    "default_retry_policy",
    "log_session_expired",
    "create_client",
    "build_parser",
    "main",
)


def test_moose_export_surface() -> None:
    missing = [name for name in EXPECTED_MOOSE_EXPORTS if not hasattr(moose, name)]
    assert missing == []
