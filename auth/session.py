from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from auth import token_blob
from auth.credential_cache import DEFAULT_LEAD_TIME_SECONDS, CredentialCache
from auth.device_code_flow import CodeReadyCallback, DeviceCodeFlow
from auth.errors import AuthError, AuthErrorCode
from auth.events import StatusChannel
from auth.identity_provider import (
    MICROSOFT_AUTHORITY_URL,
    IdentityProvider,
    MicrosoftIdentityProvider,
)
from auth.models import AuthResult, Credential, Identity, SessionState
from auth.token_blob import PersistedBlob
from auth.token_refresher import TokenRefresher
from auth.token_store import TokenStore

LOGGER = logging.getLogger("onedrive.auth.session")

DEFAULT_SCOPES = ("Files.ReadWrite.All", "User.Read")
DEFAULT_CACHE_KEY = "onedrive.token_cache"


@dataclass
class SessionOptions:
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    authority: str = MICROSOFT_AUTHORITY_URL
    cache_key: str = DEFAULT_CACHE_KEY
    refresh_lead_seconds: float = DEFAULT_LEAD_TIME_SECONDS
    # quick_authenticate falls back to the device code flow when silent renewal fails.
    interactive_fallback: bool = False
    # get_access_token may run the device code flow when silent renewal fails.
    interactive_refresh: bool = False


ProviderFactory = Callable[[str, SessionOptions], IdentityProvider]


class AuthSessionManager:
    """Owns the authentication state machine for one client registration.

    Public operations return :class:`AuthResult`; only ``get_access_token``
    raises, since it gates outbound requests.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        provider_factory: ProviderFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        automation: CodeReadyCallback | None = None,
        status: StatusChannel | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._provider_factory = provider_factory or self._default_provider
        self._http_client = http_client
        self._automation = automation
        self._status = status or StatusChannel()
        self._clock = clock
        self._sleep = sleep
        self._cache = CredentialCache(status=self._status, clock=clock)
        self._write_lock = asyncio.Lock()

        self._state = SessionState.UNINITIALIZED
        self._client_id: str | None = None
        self._options = SessionOptions()
        self._signing_key = ""
        self._provider: IdentityProvider | None = None
        self._device_flow: DeviceCodeFlow | None = None
        self._refresher: TokenRefresher | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> StatusChannel:
        return self._status

    @property
    def cache(self) -> CredentialCache:
        return self._cache

    @property
    def client_id(self) -> str | None:
        return self._client_id

    @property
    def options(self) -> SessionOptions:
        return self._options

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED and self._cache.is_fresh(0)

    @property
    def current_account(self) -> Identity | None:
        credential = self._cache.get()
        if self._state is not SessionState.AUTHENTICATED or credential is None:
            return None
        return credential.account

    async def initialize(self, client_id: str, options: SessionOptions | None = None) -> AuthResult:
        client_id = (client_id or "").strip()
        if not client_id:
            return _fail(AuthErrorCode.INVALID_CONFIGURATION, "Client ID must not be empty.")

        if self._state is not SessionState.UNINITIALIZED:
            if client_id == self._client_id:
                return AuthResult.success()
            return _fail(
                AuthErrorCode.INVALID_CONFIGURATION,
                "Session is already initialized with a different client ID.",
            )

        options = options or SessionOptions()
        if not options.scopes:
            return _fail(AuthErrorCode.INVALID_CONFIGURATION, "At least one scope is required.")
        if options.refresh_lead_seconds < 0:
            return _fail(AuthErrorCode.INVALID_CONFIGURATION, "Refresh lead time must not be negative.")

        try:
            provider = self._provider_factory(client_id, options)
        except Exception as error:
            return AuthResult.failure(AuthError.wrap(error))

        self._client_id = client_id
        self._options = options
        self._signing_key = token_blob.derive_key(client_id)
        self._provider = provider
        self._device_flow = DeviceCodeFlow(
            provider,
            self._cache,
            automation=self._automation,
            clock=self._clock,
            sleep=self._sleep,
        )
        self._refresher = TokenRefresher(
            provider,
            self._cache,
            options.scopes,
            device_flow=self._device_flow,
            persist=self._persist,
        )

        try:
            await self._load()
        except RuntimeError as error:
            LOGGER.warning("Ignoring unreadable token cache %r: %s", options.cache_key, error)

        self._state = SessionState.INITIALIZED
        LOGGER.info("Session initialized for client %s", client_id)
        return AuthResult.success()

    async def quick_authenticate(
        self,
        on_code_ready: CodeReadyCallback | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> AuthResult:
        if self._state is SessionState.UNINITIALIZED:
            return _fail(AuthErrorCode.NOT_INITIALIZED)
        if self._state is SessionState.AUTHENTICATING:
            return _fail(AuthErrorCode.UNKNOWN, "Authentication is already in progress.")

        lead_time = self._options.refresh_lead_seconds
        if self._state is SessionState.AUTHENTICATED and self._cache.is_fresh(lead_time):
            return AuthResult.success(self.current_account)

        try:
            credential = await self._refresher.ensure_valid(
                lead_time, cancellation, allow_interactive=False
            )
        except AuthError as error:
            if error.code is AuthErrorCode.REAUTH_REQUIRED and self._options.interactive_fallback:
                LOGGER.info("Silent authentication unavailable; falling back to device code flow")
                return await self.authenticate(on_code_ready, cancellation)
            return self._fail_authentication(error)
        except Exception as error:
            return self._fail_authentication(AuthError.wrap(error))

        self._enter_authenticated(credential)
        return AuthResult.success(credential.account)

    async def authenticate(
        self,
        on_code_ready: CodeReadyCallback | None = None,
        cancellation: asyncio.Event | None = None,
    ) -> AuthResult:
        if self._state is SessionState.UNINITIALIZED:
            return _fail(AuthErrorCode.NOT_INITIALIZED)
        if self._state is SessionState.AUTHENTICATING:
            return _fail(AuthErrorCode.UNKNOWN, "Authentication is already in progress.")

        self._state = SessionState.AUTHENTICATING
        try:
            challenge = await self._device_flow.begin(self._options.scopes, on_code_ready)
            credential = await self._device_flow.await_approval(challenge, cancellation)
            await self._persist()
        except Exception as error:
            return self._fail_authentication(AuthError.wrap(error))
        finally:
            if self._state is SessionState.AUTHENTICATING:
                self._state = SessionState.INITIALIZED

        self._enter_authenticated(credential)
        return AuthResult.success(credential.account)

    async def sign_out(self) -> AuthResult:
        if self._state is SessionState.UNINITIALIZED:
            return _fail(AuthErrorCode.NOT_INITIALIZED)

        for account in self._provider.get_accounts():
            try:
                await self._provider.remove_account(account)
            except Exception:
                LOGGER.warning("Failed to remove account %s", account.username, exc_info=True)

        self._cache.clear()
        self._state = SessionState.SIGNED_OUT

        try:
            async with self._write_lock:
                await self._store.delete(self._options.cache_key)
        except Exception as error:
            LOGGER.warning("Failed to delete token cache: %s", error)
            return AuthResult.failure(AuthError.wrap(error))

        LOGGER.info("Signed out")
        return AuthResult.success()

    async def get_access_token(self) -> str:
        """Return a bearer token valid for at least the refresh lead time."""
        if self._state is SessionState.UNINITIALIZED:
            raise AuthError(AuthErrorCode.NOT_INITIALIZED)
        if self._state is not SessionState.AUTHENTICATED:
            raise AuthError(
                AuthErrorCode.REAUTH_REQUIRED, "Not authenticated; call quick_authenticate() first."
            )

        try:
            credential = await self._refresher.ensure_valid(
                self._options.refresh_lead_seconds,
                allow_interactive=self._options.interactive_refresh,
            )
        except AuthError:
            if self._cache.get() is None:
                self._state = SessionState.INITIALIZED
            raise
        return credential.bearer_token

    async def aclose(self) -> None:
        if self._provider is not None:
            await self._provider.aclose()

    def _default_provider(self, client_id: str, options: SessionOptions) -> IdentityProvider:
        return MicrosoftIdentityProvider(
            client_id,
            authority=options.authority,
            client=self._http_client,
            clock=self._clock,
        )

    def _enter_authenticated(self, credential: Credential) -> None:
        # Announces the credential if it was only restored from the store.
        self._cache.set(credential)
        self._state = SessionState.AUTHENTICATED
        LOGGER.info("Authenticated as %s", credential.account.username)

    def _fail_authentication(self, error: AuthError) -> AuthResult:
        if self._state is not SessionState.SIGNED_OUT:
            self._state = SessionState.INITIALIZED
        LOGGER.warning("Authentication failed (%s): %s", error.code.value, error.message)
        return AuthResult.failure(error)

    async def _load(self) -> None:
        raw = await self._store.read(self._options.cache_key)
        if raw is None:
            return

        blob = token_blob.decode(raw, self._signing_key)
        try:
            self._provider.import_state(blob.provider_state)
        except (TypeError, ValueError) as error:
            raise AuthError(AuthErrorCode.PERSISTENCE_CORRUPT, str(error)) from error
        if blob.credential is not None:
            self._cache.restore(blob.credential)
        LOGGER.debug("Loaded token cache %r", self._options.cache_key)

    async def _persist(self) -> None:
        blob = PersistedBlob(
            credential=self._cache.get(),
            provider_state=self._provider.export_state(),
        )
        data = token_blob.encode(blob, self._signing_key)
        async with self._write_lock:
            await self._store.write(self._options.cache_key, data)


def _fail(code: AuthErrorCode, message: str | None = None) -> AuthResult:
    return AuthResult.failure(AuthError(code, message))
