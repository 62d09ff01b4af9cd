"""Codec for the persisted token cache blob.

The blob is ``<base64 json>.<base64 hmac-sha256>``; the signing key is
derived from the client id so a cache written for one app registration is
rejected by another.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass, field

from auth.errors import AuthError, AuthErrorCode
from auth.models import Credential

BLOB_VERSION = 1


@dataclass(frozen=True)
class PersistedBlob:
    credential: Credential | None = None
    provider_state: dict = field(default_factory=dict)


def derive_key(client_id: str) -> str:
    """Derive a stable signing key from the OAuth client id."""
    return hashlib.sha256(f"onedrive-auth:{client_id}".encode()).hexdigest()


def encode(blob: PersistedBlob, key: str) -> bytes:
    payload = {
        "version": BLOB_VERSION,
        "credential": blob.credential.to_dict() if blob.credential else None,
        "provider_state": blob.provider_state,
    }
    data = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    data_b64 = base64.urlsafe_b64encode(data).rstrip(b"=")
    sig = hmac.new(key.encode(), data, hashlib.sha256).digest()
    sig_b64 = base64.urlsafe_b64encode(sig).rstrip(b"=")
    return data_b64 + b"." + sig_b64


def decode(raw: bytes, key: str) -> PersistedBlob:
    parts = raw.split(b".", 1)
    if len(parts) != 2:
        raise AuthError(AuthErrorCode.PERSISTENCE_CORRUPT, "Invalid token cache format.")
    data_b64, sig_b64 = parts
    try:
        data = base64.urlsafe_b64decode(data_b64 + b"==")
        actual_sig = base64.urlsafe_b64decode(sig_b64 + b"==")
    except (binascii.Error, ValueError) as error:
        raise AuthError(AuthErrorCode.PERSISTENCE_CORRUPT, "Token cache is not valid base64.") from error

    expected_sig = hmac.new(key.encode(), data, hashlib.sha256).digest()
    if not hmac.compare_digest(expected_sig, actual_sig):
        raise AuthError(
            AuthErrorCode.PERSISTENCE_CORRUPT, "Token cache signature verification failed."
        )

    try:
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise AuthError(AuthErrorCode.PERSISTENCE_CORRUPT, "Token cache is not valid JSON.") from error
    if not isinstance(payload, dict) or payload.get("version") != BLOB_VERSION:
        raise AuthError(AuthErrorCode.PERSISTENCE_CORRUPT, "Unsupported token cache version.")

    provider_state = payload.get("provider_state") or {}
    if not isinstance(provider_state, dict):
        raise AuthError(AuthErrorCode.PERSISTENCE_CORRUPT, "Token cache provider state is invalid.")

    credential = None
    if payload.get("credential") is not None:
        try:
            credential = Credential.from_dict(payload["credential"])
        except (TypeError, ValueError) as error:
            raise AuthError(AuthErrorCode.PERSISTENCE_CORRUPT, str(error)) from error

    return PersistedBlob(credential=credential, provider_state=provider_state)
