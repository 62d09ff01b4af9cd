from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from auth.credential_cache import DEFAULT_LEAD_TIME_SECONDS, CredentialCache
from auth.device_code_flow import CodeReadyCallback, DeviceCodeFlow
from auth.errors import AuthError, AuthErrorCode
from auth.identity_provider import IdentityProvider
from auth.models import Credential

LOGGER = logging.getLogger("onedrive.auth.token_refresher")

PersistFn = Callable[[], Awaitable[None]]


async def _no_persist() -> None:
    return None


class TokenRefresher:
    """Keeps the cached credential valid, renewing it at most once at a time.

    Concurrent callers that find the cache stale share one in-flight refresh
    and all observe its credential or its error.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        cache: CredentialCache,
        scopes: list[str],
        *,
        device_flow: DeviceCodeFlow | None = None,
        allow_interactive: bool = False,
        on_code_ready: CodeReadyCallback | None = None,
        persist: PersistFn = _no_persist,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._scopes = list(scopes)
        self._device_flow = device_flow
        self._allow_interactive = allow_interactive
        self._on_code_ready = on_code_ready
        self._persist = persist
        self._gate = asyncio.Lock()
        self._inflight: asyncio.Task[Credential] | None = None

    async def ensure_valid(
        self,
        lead_time: float = DEFAULT_LEAD_TIME_SECONDS,
        cancellation: asyncio.Event | None = None,
        *,
        allow_interactive: bool | None = None,
        on_code_ready: CodeReadyCallback | None = None,
    ) -> Credential:
        """Return a credential fresh for ``lead_time`` seconds.

        ``allow_interactive`` and ``on_code_ready`` override the constructor
        policy for this call. A caller that joins a refresh already in flight
        shares that refresh and its policy.
        """
        credential = self._fresh(lead_time)
        if credential is not None:
            return credential

        if allow_interactive is None:
            allow_interactive = self._allow_interactive
        async with self._gate:
            credential = self._fresh(lead_time)
            if credential is not None:
                return credential
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(
                    self._refresh(
                        cancellation,
                        allow_interactive,
                        on_code_ready or self._on_code_ready,
                    )
                )
                self._inflight.add_done_callback(self._clear_inflight)
            inflight = self._inflight

        return await asyncio.shield(inflight)

    def _fresh(self, lead_time: float) -> Credential | None:
        credential = self._cache.get()
        if credential is not None and self._cache.is_fresh(lead_time):
            return credential
        return None

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Retrieved so a refresh nobody awaited does not log as unhandled.
            task.exception()

    async def _refresh(
        self,
        cancellation: asyncio.Event | None,
        allow_interactive: bool,
        on_code_ready: CodeReadyCallback | None,
    ) -> Credential:
        cached = self._cache.get()
        account = cached.account if cached is not None else None
        if account is None:
            account = next(iter(self._provider.get_accounts()), None)

        try:
            credential = None
            if account is not None:
                credential = await self._provider.acquire_token_silent(self._scopes, account)
            if credential is None:
                raise AuthError(AuthErrorCode.REAUTH_REQUIRED, "No account available for silent renewal.")
            self._cache.set(credential)
            LOGGER.info("Access token renewed silently for %s", credential.account.username)
        except AuthError as error:
            if error.code is not AuthErrorCode.REAUTH_REQUIRED:
                raise
            credential = await self._reauthenticate(
                error, cancellation, allow_interactive, on_code_ready, attempted=account is not None
            )

        await self._persist()
        return credential

    async def _reauthenticate(
        self,
        error: AuthError,
        cancellation: asyncio.Event | None,
        allow_interactive: bool,
        on_code_ready: CodeReadyCallback | None,
        *,
        attempted: bool,
    ) -> Credential:
        if allow_interactive and self._device_flow is not None:
            LOGGER.info("Silent renewal unavailable; starting device code flow")
            try:
                challenge = await self._device_flow.begin(self._scopes, on_code_ready)
                return await self._device_flow.await_approval(challenge, cancellation)
            except AuthError as flow_error:
                if flow_error.code in (
                    AuthErrorCode.CANCELLED,
                    AuthErrorCode.PROVIDER_UNAVAILABLE,
                ):
                    raise
                error = flow_error

        LOGGER.warning("Token refresh failed; re-authentication required: %s", error.message)
        await self._discard(provider_changed=attempted)
        raise AuthError(AuthErrorCode.REAUTH_REQUIRED, error.message) from error

    async def _discard(self, *, provider_changed: bool) -> None:
        # The store is rewritten only when the cache or the provider state lost something.
        had_credential = self._cache.get() is not None
        self._cache.clear()
        if had_credential or provider_changed:
            await self._persist()
