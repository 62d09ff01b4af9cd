"""Process-wide convenience accessor over one :class:`AuthSessionManager`.

Applications that prefer an explicit manager instance can ignore this module.
"""

from __future__ import annotations

import asyncio

import httpx

from auth.device_code_flow import CodeReadyCallback
from auth.errors import AuthError, AuthErrorCode
from auth.models import AuthResult, Identity
from auth.session import AuthSessionManager
from auth.token_store import FileTokenStore, TokenStore

from .automation import DeviceCodeAutomation, EnvironmentExecutor
from .constants import GRAPH_BASE_URL, LOGGER
from .env import OneDriveConfig, load_config
from .http import RetryTransport, build_provider_client

_session: AuthSessionManager | None = None


async def initialize(
    config: OneDriveConfig | None = None,
    *,
    store: TokenStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    automation: CodeReadyCallback | None = None,
    executor: EnvironmentExecutor | None = None,
) -> AuthResult:
    global _session

    if config is None:
        try:
            config = load_config()
        except RuntimeError as error:
            return AuthResult.failure(AuthError(AuthErrorCode.INVALID_CONFIGURATION, str(error)))

    if _session is not None:
        return await _session.initialize(config.client_id, config.session_options())

    session = AuthSessionManager(
        store or FileTokenStore(config.token_cache_path),
        http_client=http_client
        or build_provider_client(timeout=config.http_timeout, max_retries=config.http_max_retries),
        automation=automation or DeviceCodeAutomation.from_config(config, executor),
    )
    result = await session.initialize(config.client_id, config.session_options())
    if not result.ok:
        await session.aclose()
        return result

    _session = session
    return result


async def quick_authenticate(on_code_ready: CodeReadyCallback | None = None) -> AuthResult:
    if _session is None:
        return AuthResult.failure(AuthError(AuthErrorCode.NOT_INITIALIZED))
    return await _session.quick_authenticate(on_code_ready)


async def authenticate(
    on_code_ready: CodeReadyCallback | None = None,
    cancellation: asyncio.Event | None = None,
) -> AuthResult:
    if _session is None:
        return AuthResult.failure(AuthError(AuthErrorCode.NOT_INITIALIZED))
    return await _session.authenticate(on_code_ready, cancellation)


async def sign_out() -> AuthResult:
    if _session is None:
        return AuthResult.failure(AuthError(AuthErrorCode.NOT_INITIALIZED))
    return await _session.sign_out()


def is_initialized() -> bool:
    return _session is not None


def is_authenticated() -> bool:
    return _session is not None and _session.is_authenticated


def current_account() -> Identity | None:
    if _session is None:
        return None
    return _session.current_account


def get_session() -> AuthSessionManager:
    if _session is None:
        raise AuthError(AuthErrorCode.NOT_INITIALIZED)
    return _session


async def dispose() -> None:
    global _session

    session, _session = _session, None
    if session is not None:
        await session.aclose()
        LOGGER.info("OneDrive session disposed")


def build_graph_client(
    session: AuthSessionManager | None = None,
    *,
    base_url: str = GRAPH_BASE_URL,
    timeout: float = 30.0,
    max_retries: int = 2,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build a Microsoft Graph client that authorizes every request through *session*."""
    session = session or get_session()

    async def authorize_request(request: httpx.Request) -> None:
        token = await session.get_access_token()
        request.headers["Authorization"] = f"Bearer {token}"

    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        transport=RetryTransport(transport or httpx.AsyncHTTPTransport(), max_retries=max_retries),
        event_hooks={"request": [authorize_request]},
    )
