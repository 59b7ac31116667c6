from __future__ import annotations

import logging
import platform

HTTP_METHODS = {
    "get",
    "post",
    "put",
    "patch",
    "delete",
    "options",
    "head",
}

LOGGER = logging.getLogger("moose_api.client")
APP_VERSION = "1.0.0"
DEFAULT_BASE_URL = "http://localhost:3001/api"
DEFAULT_PLATFORM = "python"
DEFAULT_PLATFORM_VERSION = platform.python_version()
DEFAULT_REFRESH_PATH = "/auth/refresh"
DEFAULT_TOKEN_STORE_PATH = ".credentials.json"

# Refresh responses without expiresAt are assumed valid for a day.
DEFAULT_TOKEN_LIFETIME_SECONDS = 24 * 60 * 60
ERROR_BODY_LOG_LIMIT = 1000
