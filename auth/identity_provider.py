from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable

import httpx

from auth.errors import AuthError, AuthErrorCode, ProviderError
from auth.models import Credential, DeviceCodeChallenge, Identity

MICROSOFT_AUTHORITY_URL = "https://login.microsoftonline.com/common"
DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
# Always requested so the provider issues an ID token and a refresh token.
RESERVED_SCOPES = ("openid", "profile", "offline_access")
DEFAULT_POLLING_INTERVAL = 5


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    expires_at: float
    scope: str
    refresh_token: str | None = None
    id_token: str | None = None

    @classmethod
    def from_payload(cls, payload: dict, *, now: float | None = None) -> "TokenResponse":
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        scope = payload.get("scope", "")
        id_token = payload.get("id_token")

        if isinstance(expires_in, str) and expires_in.isdigit():
            expires_in = int(expires_in)

        if not isinstance(access_token, str) or not access_token:
            raise AuthError(AuthErrorCode.UNKNOWN, "Token response missing access_token.")
        if not isinstance(expires_in, int) or expires_in <= 0:
            raise AuthError(AuthErrorCode.UNKNOWN, "Token response missing expires_in.")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise AuthError(AuthErrorCode.UNKNOWN, "Token response refresh_token must be a string.")
        if not isinstance(scope, str):
            raise AuthError(AuthErrorCode.UNKNOWN, "Token response scope must be a string.")

        issued_at = time.time() if now is None else now
        return cls(
            access_token=access_token,
            expires_in=expires_in,
            expires_at=issued_at + expires_in,
            scope=scope,
            refresh_token=refresh_token or None,
            id_token=id_token if isinstance(id_token, str) else None,
        )


def build_scope(scopes: list[str] | tuple[str, ...]) -> str:
    ordered: list[str] = []
    for scope in (*scopes, *RESERVED_SCOPES):
        if scope and scope not in ordered:
            ordered.append(scope)
    return " ".join(ordered)


def decode_id_token_claims(id_token: str) -> dict:
    """Return the claims of an ID token without validating its signature."""
    parts = id_token.split(".")
    if len(parts) < 2:
        return {}
    try:
        data = base64.urlsafe_b64decode(parts[1] + "=" * (-len(parts[1]) % 4))
        claims = json.loads(data)
    except (binascii.Error, ValueError):
        return {}
    return claims if isinstance(claims, dict) else {}


def identity_from_claims(claims: dict) -> Identity | None:
    object_id = claims.get("oid") or claims.get("sub")
    if not isinstance(object_id, str) or not object_id:
        return None
    tenant_id = claims.get("tid") if isinstance(claims.get("tid"), str) else None
    username = claims.get("preferred_username") or claims.get("email") or object_id
    return Identity(
        home_account_id=f"{object_id}.{tenant_id}" if tenant_id else object_id,
        username=str(username),
        name=claims.get("name") if isinstance(claims.get("name"), str) else None,
        tenant_id=tenant_id,
    )


@runtime_checkable
class IdentityProvider(Protocol):
    async def request_device_code(self, scopes: list[str]) -> DeviceCodeChallenge: ...

    async def poll_device_code(
        self, challenge: DeviceCodeChallenge, scopes: list[str]
    ) -> Credential: ...

    async def acquire_token_silent(
        self, scopes: list[str], account: Identity | None = None
    ) -> Credential | None: ...

    def get_accounts(self) -> list[Identity]: ...

    async def remove_account(self, account: Identity) -> None: ...

    def export_state(self) -> dict: ...

    def import_state(self, state: dict) -> None: ...

    async def aclose(self) -> None: ...


class MicrosoftIdentityProvider:
    """Device-code and refresh-token grants against the Microsoft identity platform.

    Refresh tokens are kept per account in provider state, which the session
    manager serializes into the persisted token cache.
    """

    def __init__(
        self,
        client_id: str,
        *,
        authority: str = MICROSOFT_AUTHORITY_URL,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_id = client_id
        self.authority = authority.rstrip("/")
        self._client = client
        self._clock = clock
        self._accounts: dict[str, dict] = {}

    @property
    def device_code_url(self) -> str:
        return f"{self.authority}/oauth2/v2.0/devicecode"

    @property
    def token_url(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    async def request_device_code(self, scopes: list[str]) -> DeviceCodeChallenge:
        payload = await self._post(
            self.device_code_url,
            {"client_id": self.client_id, "scope": build_scope(scopes)},
        )

        user_code = payload.get("user_code")
        device_code = payload.get("device_code")
        verification_uri = payload.get("verification_uri") or payload.get("verification_url")
        expires_in = payload.get("expires_in")
        interval = payload.get("interval", DEFAULT_POLLING_INTERVAL)

        if not isinstance(user_code, str) or not isinstance(device_code, str):
            raise AuthError(AuthErrorCode.UNKNOWN, "Device code response missing codes.")
        if not isinstance(verification_uri, str) or not verification_uri:
            raise AuthError(AuthErrorCode.UNKNOWN, "Device code response missing verification_uri.")
        try:
            expires_in = int(expires_in)
            interval = max(1, int(interval))
        except (TypeError, ValueError) as error:
            raise AuthError(
                AuthErrorCode.UNKNOWN, "Device code response has invalid timing fields."
            ) from error

        return DeviceCodeChallenge(
            user_code=user_code,
            verification_uri=verification_uri,
            expires_at=self._clock() + expires_in,
            interval=interval,
            device_code=device_code,
            message=str(payload.get("message") or ""),
        )

    async def poll_device_code(
        self, challenge: DeviceCodeChallenge, scopes: list[str]
    ) -> Credential:
        payload = await self._post(
            self.token_url,
            {
                "grant_type": DEVICE_CODE_GRANT_TYPE,
                "client_id": self.client_id,
                "device_code": challenge.device_code,
            },
        )
        token = TokenResponse.from_payload(payload, now=self._clock())
        return self._remember(token, scopes)

    async def acquire_token_silent(
        self, scopes: list[str], account: Identity | None = None
    ) -> Credential | None:
        entry = self._select_account(account)
        if entry is None or not entry.get("refresh_token"):
            return None

        known = Identity.from_dict(entry["account"])
        try:
            payload = await self._post(
                self.token_url,
                {
                    "grant_type": "refresh_token",
                    "client_id": self.client_id,
                    "refresh_token": entry["refresh_token"],
                    "scope": build_scope(scopes),
                },
            )
        except ProviderError as error:
            if error.code is AuthErrorCode.REAUTH_REQUIRED:
                self._accounts.pop(known.home_account_id, None)
            raise

        token = TokenResponse.from_payload(payload, now=self._clock())
        return self._remember(token, scopes, fallback=known, fallback_refresh=entry["refresh_token"])

    def get_accounts(self) -> list[Identity]:
        return [Identity.from_dict(entry["account"]) for entry in self._accounts.values()]

    async def remove_account(self, account: Identity) -> None:
        self._accounts.pop(account.home_account_id, None)

    def export_state(self) -> dict:
        return {"accounts": [dict(entry) for entry in self._accounts.values()]}

    def import_state(self, state: dict) -> None:
        accounts = state.get("accounts", [])
        if not isinstance(accounts, list):
            raise ValueError("Provider state accounts must be a list.")

        restored: dict[str, dict] = {}
        for entry in accounts:
            if not isinstance(entry, dict):
                raise ValueError("Provider state account entries must be objects.")
            identity = Identity.from_dict(entry.get("account") or {})
            refresh_token = entry.get("refresh_token")
            if refresh_token is not None and not isinstance(refresh_token, str):
                raise ValueError("Provider state refresh_token must be a string.")
            restored[identity.home_account_id] = {
                "account": identity.to_dict(),
                "refresh_token": refresh_token,
            }
        self._accounts = restored

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _select_account(self, account: Identity | None) -> dict | None:
        if account is not None:
            return self._accounts.get(account.home_account_id)
        return next(iter(self._accounts.values()), None)

    def _remember(
        self,
        token: TokenResponse,
        scopes: list[str],
        *,
        fallback: Identity | None = None,
        fallback_refresh: str | None = None,
    ) -> Credential:
        identity = None
        if token.id_token:
            identity = identity_from_claims(decode_id_token_claims(token.id_token))
        identity = identity or fallback or Identity(home_account_id="unknown", username="unknown")

        self._accounts[identity.home_account_id] = {
            "account": identity.to_dict(),
            "refresh_token": token.refresh_token or fallback_refresh,
        }

        granted = token.scope.split() if token.scope else list(scopes)
        return Credential(
            bearer_token=token.access_token,
            expires_at=token.expires_at,
            account=identity,
            scopes=frozenset(granted),
        )

    async def _post(self, url: str, data: dict[str, str]) -> dict:
        own_client = self._client is None
        http_client = self._client or httpx.AsyncClient()

        try:
            response = await http_client.post(url, data=data)
        except httpx.TransportError as error:
            raise AuthError(
                AuthErrorCode.PROVIDER_UNAVAILABLE,
                f"Identity provider request failed: {error}",
            ) from error
        finally:
            if own_client:
                await http_client.aclose()

        if response.status_code >= 400:
            raise _provider_error(response)

        try:
            payload = response.json()
        except ValueError as error:
            raise AuthError(
                AuthErrorCode.UNKNOWN, "Identity provider returned a non-JSON response."
            ) from error
        if not isinstance(payload, dict):
            raise AuthError(AuthErrorCode.UNKNOWN, "Identity provider returned an unexpected payload.")
        return payload


def _provider_error(response: httpx.Response) -> ProviderError:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    error = payload.get("error")
    description = payload.get("error_description")
    if not isinstance(error, str) or not error:
        error = f"http_{response.status_code}"
        description = description or response.text[:200] or None
    return ProviderError(error, description, status_code=response.status_code)
