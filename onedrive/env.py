from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, ValidationError

from auth.identity_provider import MICROSOFT_AUTHORITY_URL
from auth.session import DEFAULT_CACHE_KEY, DEFAULT_SCOPES, SessionOptions

from .constants import (
    DEFAULT_AUTOMATION_TIMEOUT_SECONDS,
    DEFAULT_HTTP_MAX_RETRIES,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_CACHE_PATH,
    ENV_FILE,
    LOGGER,
)


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return is_truthy(raw)


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
        raise RuntimeError(f"{key} must be a number.")


@dataclass
class OneDriveConfig:
    client_id: str
    authority: str = MICROSOFT_AUTHORITY_URL
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    token_cache_path: Path = DEFAULT_TOKEN_CACHE_PATH
    token_cache_key: str = DEFAULT_CACHE_KEY
    refresh_lead_seconds: int = 300
    auto_copy_to_clipboard: bool = True
    auto_open_browser: bool = True
    interactive_fallback: bool = True
    interactive_refresh: bool = False
    automation_timeout: float = DEFAULT_AUTOMATION_TIMEOUT_SECONDS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    http_max_retries: int = DEFAULT_HTTP_MAX_RETRIES
    debug: bool = False

    def session_options(self) -> SessionOptions:
        return SessionOptions(
            scopes=list(self.scopes),
            authority=self.authority,
            cache_key=self.token_cache_key,
            refresh_lead_seconds=self.refresh_lead_seconds,
            interactive_fallback=self.interactive_fallback,
            interactive_refresh=self.interactive_refresh,
        )


def load_env(env_path: Path = ENV_FILE) -> None:
    if not env_path.exists():
        return
    load_dotenv(env_path, override=False)


def validate_env() -> None:
    if not os.getenv("ONEDRIVE_CLIENT_ID", "").strip():
        raise RuntimeError("Missing required environment variable: ONEDRIVE_CLIENT_ID")

    authority = os.getenv("ONEDRIVE_AUTHORITY", "").strip()
    if authority:
        try:
            url = AnyHttpUrl(authority)
        except ValidationError:
            raise RuntimeError(
                "ONEDRIVE_AUTHORITY must be a valid URL (for example: "
                "https://login.microsoftonline.com/common)."
            )
        if url.scheme != "https":
            raise RuntimeError("ONEDRIVE_AUTHORITY must use https.")

    scopes = os.getenv("ONEDRIVE_SCOPES")
    if scopes is not None and not scopes.split():
        raise RuntimeError("ONEDRIVE_SCOPES must name at least one scope.")

    if _get_env_int("ONEDRIVE_REFRESH_LEAD_SECONDS", 300) < 0:
        raise RuntimeError("ONEDRIVE_REFRESH_LEAD_SECONDS must not be negative.")
    if _get_env_float("ONEDRIVE_AUTOMATION_TIMEOUT", DEFAULT_AUTOMATION_TIMEOUT_SECONDS) <= 0:
        raise RuntimeError("ONEDRIVE_AUTOMATION_TIMEOUT must be positive.")


def load_config() -> OneDriveConfig:
    validate_env()
    scopes = os.getenv("ONEDRIVE_SCOPES")
    return OneDriveConfig(
        client_id=os.getenv("ONEDRIVE_CLIENT_ID", "").strip(),
        authority=os.getenv("ONEDRIVE_AUTHORITY", "").strip() or MICROSOFT_AUTHORITY_URL,
        scopes=scopes.split() if scopes else list(DEFAULT_SCOPES),
        token_cache_path=Path(
            os.getenv("ONEDRIVE_TOKEN_CACHE_PATH", "").strip() or DEFAULT_TOKEN_CACHE_PATH
        ).expanduser(),
        token_cache_key=os.getenv("ONEDRIVE_TOKEN_CACHE_KEY", "").strip() or DEFAULT_CACHE_KEY,
        refresh_lead_seconds=_get_env_int("ONEDRIVE_REFRESH_LEAD_SECONDS", 300),
        auto_copy_to_clipboard=_get_env_bool("ONEDRIVE_AUTO_COPY_TO_CLIPBOARD", True),
        auto_open_browser=_get_env_bool("ONEDRIVE_AUTO_OPEN_BROWSER", True),
        interactive_fallback=_get_env_bool("ONEDRIVE_INTERACTIVE_FALLBACK", True),
        interactive_refresh=_get_env_bool("ONEDRIVE_INTERACTIVE_REFRESH", False),
        automation_timeout=_get_env_float(
            "ONEDRIVE_AUTOMATION_TIMEOUT", DEFAULT_AUTOMATION_TIMEOUT_SECONDS
        ),
        http_timeout=_get_env_float("ONEDRIVE_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
        http_max_retries=_get_env_int("ONEDRIVE_HTTP_MAX_RETRIES", DEFAULT_HTTP_MAX_RETRIES),
        debug=_get_env_bool("ONEDRIVE_DEBUG", False),
    )


def setup_logging(debug: bool | None = None) -> bool:
    debug_enabled = is_truthy(os.getenv("ONEDRIVE_DEBUG")) if debug is None else debug
    level = logging.DEBUG if debug_enabled else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    LOGGER.setLevel(level)
    return debug_enabled
