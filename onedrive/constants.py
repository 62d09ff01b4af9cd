from __future__ import annotations

import logging
from pathlib import Path

LOGGER = logging.getLogger("onedrive")
APP_VERSION = "0.1.0"

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_TOKEN_CACHE_PATH = Path("~/.onedrive-auth/token_cache.json")
DEFAULT_AUTOMATION_TIMEOUT_SECONDS = 5.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_HTTP_MAX_RETRIES = 2
ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
