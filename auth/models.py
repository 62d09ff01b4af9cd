from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from auth.errors import AuthError


@dataclass(frozen=True)
class Identity:
    home_account_id: str
    username: str
    name: str | None = None
    tenant_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "home_account_id": self.home_account_id,
            "username": self.username,
            "name": self.name,
            "tenant_id": self.tenant_id,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Identity":
        home_account_id = payload.get("home_account_id")
        username = payload.get("username")
        if not isinstance(home_account_id, str) or not isinstance(username, str):
            raise ValueError("Identity requires home_account_id and username strings.")
        return cls(
            home_account_id=home_account_id,
            username=username,
            name=payload.get("name"),
            tenant_id=payload.get("tenant_id"),
        )


@dataclass(frozen=True)
class Credential:
    bearer_token: str
    expires_at: float
    account: Identity
    scopes: frozenset[str] = field(default_factory=frozenset)

    @property
    def account_identifier(self) -> str:
        return self.account.home_account_id

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def is_fresh(self, now: float, lead_time: float = 0.0) -> bool:
        return now + lead_time < self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "bearer_token": self.bearer_token,
            "expires_at": self.expires_at,
            "account": self.account.to_dict(),
            "scopes": sorted(self.scopes),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Credential":
        bearer_token = payload.get("bearer_token")
        expires_at = payload.get("expires_at")
        account = payload.get("account")
        scopes = payload.get("scopes", [])

        if not isinstance(bearer_token, str) or not bearer_token:
            raise ValueError("Credential requires a bearer_token.")
        if not isinstance(expires_at, (int, float)):
            raise ValueError("Credential requires a numeric expires_at.")
        if not isinstance(account, dict):
            raise ValueError("Credential requires an account object.")
        if not isinstance(scopes, list):
            raise ValueError("Credential scopes must be a list.")

        return cls(
            bearer_token=bearer_token,
            expires_at=float(expires_at),
            account=Identity.from_dict(account),
            scopes=frozenset(str(scope) for scope in scopes),
        )


@dataclass(frozen=True)
class DeviceCodeChallenge:
    user_code: str
    verification_uri: str
    expires_at: float
    interval: float
    device_code: str
    message: str = ""


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SIGNED_OUT = "signed_out"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a public session operation."""

    error: AuthError | None = None
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def message(self) -> str:
        if self.error is None:
            return "OK"
        return self.error.message

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: Any = None) -> "AuthResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> "AuthResult":
        return cls(error=error)
