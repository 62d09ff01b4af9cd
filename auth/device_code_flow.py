from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable

from auth.credential_cache import CredentialCache
from auth.errors import AuthError, AuthErrorCode, ProviderError
from auth.identity_provider import IdentityProvider
from auth.models import Credential, DeviceCodeChallenge

LOGGER = logging.getLogger("onedrive.auth.device_code_flow")

# RFC 8628 section 3.5
SLOW_DOWN_INCREMENT_SECONDS = 5

CodeReadyCallback = Callable[[DeviceCodeChallenge], Any]


class DeviceCodeFlow:
    """Runs the OAuth2 device authorization grant against an identity provider."""

    def __init__(
        self,
        provider: IdentityProvider,
        cache: CredentialCache,
        *,
        automation: CodeReadyCallback | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._automation = automation
        self._clock = clock
        self._sleep = sleep
        self._scopes: list[str] = []

    async def begin(
        self,
        scopes: list[str],
        on_code_ready: CodeReadyCallback | None = None,
    ) -> DeviceCodeChallenge:
        try:
            challenge = await self._provider.request_device_code(list(scopes))
        except AuthError:
            raise
        except Exception as error:
            raise AuthError.wrap(error) from error

        self._scopes = list(scopes)
        LOGGER.info("Device code issued; verification URI %s", challenge.verification_uri)

        await _notify("automation", self._automation, challenge)
        await _notify("on_code_ready", on_code_ready, challenge)
        return challenge

    async def await_approval(
        self,
        challenge: DeviceCodeChallenge,
        cancellation: asyncio.Event | None = None,
    ) -> Credential:
        interval = float(challenge.interval)

        while True:
            if cancellation is not None and cancellation.is_set():
                raise AuthError(AuthErrorCode.CANCELLED)
            if self._clock() >= challenge.expires_at:
                raise AuthError(AuthErrorCode.EXPIRED)

            await self._wait(interval, cancellation)
            if cancellation is not None and cancellation.is_set():
                raise AuthError(AuthErrorCode.CANCELLED)
            if self._clock() >= challenge.expires_at:
                raise AuthError(AuthErrorCode.EXPIRED)

            try:
                credential = await self._provider.poll_device_code(challenge, self._scopes)
            except ProviderError as error:
                if error.is_pending:
                    LOGGER.debug("Authorization pending; polling again in %.0fs", interval)
                    continue
                if error.code is AuthErrorCode.SLOW_DOWN:
                    interval += SLOW_DOWN_INCREMENT_SECONDS
                    LOGGER.debug("Provider asked to slow down; interval now %.0fs", interval)
                    continue
                raise

            self._cache.set(credential)
            LOGGER.info("Device code approved for %s", credential.account.username)
            return credential

    async def _wait(self, interval: float, cancellation: asyncio.Event | None) -> None:
        if cancellation is None:
            await self._sleep(interval)
            return
        try:
            await asyncio.wait_for(cancellation.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def _notify(
    name: str,
    callback: CodeReadyCallback | None,
    challenge: DeviceCodeChallenge,
) -> None:
    if callback is None:
        return
    try:
        result = callback(challenge)
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.warning("Device code %s callback failed", name, exc_info=True)
