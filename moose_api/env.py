from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, ValidationError

from .constants import (
    APP_VERSION,
    DEFAULT_BASE_URL,
    DEFAULT_PLATFORM,
    DEFAULT_PLATFORM_VERSION,
    DEFAULT_REFRESH_PATH,
    DEFAULT_TOKEN_STORE_PATH,
    LOGGER,
)


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_str(key: str, default: str) -> str:
    raw = os.getenv(key, "").strip()
    return raw or default


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a numeric value.")


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def validate_base_url(raw_url: str) -> str:
    try:
        AnyHttpUrl(raw_url)
    except ValidationError as error:
        raise RuntimeError(
            "MOOSE_API_BASE_URL must be a valid HTTP(S) URL (for example: "
            "https://api.mooseticket.com/api)."
        ) from error
    return raw_url.rstrip("/")


@dataclass(frozen=True)
class ClientSettings:
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_backoff_multiplier: float = 2.0
    refresh_path: str = DEFAULT_REFRESH_PATH
    refresh_buffer_seconds: float = 300.0
    rate_limit_cooldown: float = 30.0
    token_store_path: str = DEFAULT_TOKEN_STORE_PATH
    platform: str = DEFAULT_PLATFORM
    platform_version: str = DEFAULT_PLATFORM_VERSION
    app_version: str = APP_VERSION
    debug: bool = False

    @classmethod
    def from_env(cls) -> "ClientSettings":
        settings = cls(
            base_url=validate_base_url(_get_env_str("MOOSE_API_BASE_URL", DEFAULT_BASE_URL)),
            timeout=_get_env_float("MOOSE_API_TIMEOUT", 30.0),
            max_retries=_get_env_int("MOOSE_API_MAX_RETRIES", 3),
            retry_base_delay=_get_env_float("MOOSE_API_RETRY_BASE_DELAY", 1.0),
            retry_max_delay=_get_env_float("MOOSE_API_RETRY_MAX_DELAY", 10.0),
            retry_backoff_multiplier=_get_env_float("MOOSE_API_RETRY_BACKOFF", 2.0),
            refresh_path=_get_env_str("MOOSE_API_REFRESH_PATH", DEFAULT_REFRESH_PATH),
            refresh_buffer_seconds=_get_env_float("MOOSE_API_REFRESH_BUFFER", 300.0),
            rate_limit_cooldown=_get_env_float("MOOSE_API_RATE_LIMIT_COOLDOWN", 30.0),
            token_store_path=_get_env_str("MOOSE_TOKEN_STORE_PATH", DEFAULT_TOKEN_STORE_PATH),
            platform=_get_env_str("MOOSE_PLATFORM", DEFAULT_PLATFORM),
            platform_version=_get_env_str("MOOSE_PLATFORM_VERSION", DEFAULT_PLATFORM_VERSION),
            app_version=_get_env_str("MOOSE_APP_VERSION", APP_VERSION),
            debug=is_truthy(os.getenv("MOOSE_API_DEBUG", "1")),
        )
        validate_settings(settings)
        return settings


def validate_settings(settings: ClientSettings) -> None:
    if settings.timeout <= 0:
        raise RuntimeError("MOOSE_API_TIMEOUT must be greater than zero.")
    if settings.max_retries < 0:
        raise RuntimeError("MOOSE_API_MAX_RETRIES must not be negative.")
    if settings.retry_base_delay < 0 or settings.retry_max_delay < 0:
        raise RuntimeError("Retry delays must not be negative.")
    if settings.retry_backoff_multiplier <= 1:
        raise RuntimeError("MOOSE_API_RETRY_BACKOFF must be greater than 1.")
    if not settings.refresh_path.startswith("/"):
        raise RuntimeError("MOOSE_API_REFRESH_PATH must start with '/'.")
    if settings.refresh_buffer_seconds < 0:
        LOGGER.warning("MOOSE_API_REFRESH_BUFFER is negative; proactive refresh disabled.")


def setup_logging(settings: ClientSettings | None = None) -> bool:
    if settings is None:
        debug_enabled = is_truthy(os.getenv("MOOSE_API_DEBUG", "1"))
    else:
        debug_enabled = settings.debug
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled
