"""Error types raised by the authentication core.

Internal components raise :class:`AuthError`; the session manager turns
them into :class:`auth.models.AuthResult` values at its public surface.
"""

from __future__ import annotations

from enum import Enum


class AuthErrorCode(str, Enum):
    NOT_INITIALIZED = "not_initialized"
    INVALID_CONFIGURATION = "invalid_configuration"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    INVALID_CLIENT = "invalid_client"
    EXPIRED = "expired"
    SLOW_DOWN = "slow_down"
    CANCELLED = "cancelled"
    REAUTH_REQUIRED = "reauth_required"
    PERSISTENCE_CORRUPT = "persistence_corrupt"
    UNKNOWN = "unknown"


_DEFAULT_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.NOT_INITIALIZED: "SDK not initialized.",
    AuthErrorCode.INVALID_CONFIGURATION: "Invalid configuration.",
    AuthErrorCode.PROVIDER_UNAVAILABLE: "Identity provider could not be reached.",
    AuthErrorCode.INVALID_CLIENT: "Client registration was rejected by the identity provider.",
    AuthErrorCode.EXPIRED: "Device code expired before the user approved the sign-in.",
    AuthErrorCode.SLOW_DOWN: "Identity provider asked to slow down polling.",
    AuthErrorCode.CANCELLED: "Authentication was cancelled.",
    AuthErrorCode.REAUTH_REQUIRED: "Re-authentication required.",
    AuthErrorCode.PERSISTENCE_CORRUPT: "Persisted token cache is corrupt.",
    AuthErrorCode.UNKNOWN: "Unknown error occurred.",
}

# OAuth error strings from the token endpoint, keyed to the code they surface as.
_PROVIDER_ERROR_CODES: dict[str, AuthErrorCode] = {
    "slow_down": AuthErrorCode.SLOW_DOWN,
    "expired_token": AuthErrorCode.EXPIRED,
    "code_expired": AuthErrorCode.EXPIRED,
    "invalid_grant": AuthErrorCode.REAUTH_REQUIRED,
    "interaction_required": AuthErrorCode.REAUTH_REQUIRED,
    "consent_required": AuthErrorCode.REAUTH_REQUIRED,
    "login_required": AuthErrorCode.REAUTH_REQUIRED,
    "access_denied": AuthErrorCode.REAUTH_REQUIRED,
    "authorization_declined": AuthErrorCode.REAUTH_REQUIRED,
    "invalid_client": AuthErrorCode.INVALID_CLIENT,
    "unauthorized_client": AuthErrorCode.INVALID_CLIENT,
    "temporarily_unavailable": AuthErrorCode.PROVIDER_UNAVAILABLE,
    "server_error": AuthErrorCode.PROVIDER_UNAVAILABLE,
}


class AuthError(RuntimeError):
    """Typed authentication failure carrying an :class:`AuthErrorCode`."""

    def __init__(self, code: AuthErrorCode, message: str | None = None) -> None:
        super().__init__(message or _DEFAULT_MESSAGES[code])
        self.code = code

    @property
    def message(self) -> str:
        return str(self)

    def to_payload(self) -> dict[str, str]:
        """Return a JSON-serialisable payload without secrets."""
        return {"error": self.code.value, "message": self.message}

    @classmethod
    def wrap(cls, error: BaseException) -> "AuthError":
        """Return *error* unchanged if typed, else wrap it as ``UNKNOWN``."""
        if isinstance(error, AuthError):
            return error
        return cls(AuthErrorCode.UNKNOWN, str(error) or _DEFAULT_MESSAGES[AuthErrorCode.UNKNOWN])


class ProviderError(AuthError):
    """OAuth error response returned by the identity provider."""

    def __init__(
        self,
        oauth_error: str,
        description: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        code = _PROVIDER_ERROR_CODES.get(oauth_error)
        if code is None:
            code = (
                AuthErrorCode.PROVIDER_UNAVAILABLE
                if status_code is not None and status_code >= 500
                else AuthErrorCode.UNKNOWN
            )
        super().__init__(code, description or oauth_error)
        self.oauth_error = oauth_error
        self.status_code = status_code

    @property
    def is_pending(self) -> bool:
        return self.oauth_error == "authorization_pending"

    def to_payload(self) -> dict[str, str]:
        payload = super().to_payload()
        payload["oauth_error"] = self.oauth_error
        return payload
