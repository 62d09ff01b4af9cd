import asyncio

import pytest

from auth import token_blob
from auth.errors import AuthError, AuthErrorCode, ProviderError
from auth.events import AuthenticationStatusChanged
from auth.models import SessionState
from auth.session import DEFAULT_CACHE_KEY, AuthSessionManager, SessionOptions
from auth.token_blob import PersistedBlob
from auth.token_store import FileTokenStore, MemoryTokenStore
from provider_helpers import ACCOUNT, make_credential, make_manager, provider_state, seed_store

CLIENT_ID = "client-1"
KEY = token_blob.derive_key(CLIENT_ID)


class FailingDeleteStore(MemoryTokenStore):
    async def delete(self, key: str) -> None:
        raise OSError("read-only file system")


async def _stored(store) -> PersistedBlob | None:
    raw = await store.read(DEFAULT_CACHE_KEY)
    return None if raw is None else token_blob.decode(raw, KEY)


@pytest.mark.asyncio
async def test_initialize_requires_client_id() -> None:
    manager, _, _, _ = make_manager()

    result = await manager.initialize("  ")

    assert result.error.code is AuthErrorCode.INVALID_CONFIGURATION
    assert manager.state is SessionState.UNINITIALIZED


@pytest.mark.asyncio
async def test_initialize_twice() -> None:
    manager, _, _, _ = make_manager()

    assert (await manager.initialize(CLIENT_ID)).ok
    assert (await manager.initialize(CLIENT_ID)).ok
    other = await manager.initialize("client-2")

    assert other.error.code is AuthErrorCode.INVALID_CONFIGURATION
    assert manager.client_id == CLIENT_ID
    assert manager.state is SessionState.INITIALIZED


@pytest.mark.asyncio
async def test_initialize_rejects_empty_scopes() -> None:
    manager, _, _, _ = make_manager()

    result = await manager.initialize(CLIENT_ID, SessionOptions(scopes=[]))

    assert result.error.code is AuthErrorCode.INVALID_CONFIGURATION


@pytest.mark.asyncio
async def test_operations_require_initialize() -> None:
    manager, _, _, _ = make_manager()

    for result in (
        await manager.quick_authenticate(),
        await manager.authenticate(),
        await manager.sign_out(),
    ):
        assert result.error.code is AuthErrorCode.NOT_INITIALIZED
    with pytest.raises(AuthError) as excinfo:
        await manager.get_access_token()
    assert excinfo.value.code is AuthErrorCode.NOT_INITIALIZED


@pytest.mark.asyncio
async def test_quick_authenticate_without_blob_requires_reauth() -> None:
    manager, provider, store, _ = make_manager()
    await manager.initialize(CLIENT_ID)

    result = await manager.quick_authenticate()

    assert result.error.code is AuthErrorCode.REAUTH_REQUIRED
    assert provider.silent_calls == 0
    assert provider.device_code_calls == 0
    assert manager.state is SessionState.INITIALIZED
    assert not manager.is_authenticated
    assert await store.read(DEFAULT_CACHE_KEY) is None


@pytest.mark.asyncio
async def test_quick_authenticate_uses_cached_credential() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=600)
    events = manager.status.subscribe()
    await manager.initialize(CLIENT_ID)
    assert events.pending() == []

    result = await manager.quick_authenticate()

    assert result.ok
    assert result.value == ACCOUNT
    assert provider.silent_calls == 0
    assert manager.state is SessionState.AUTHENTICATED
    assert manager.is_authenticated
    assert manager.current_account == ACCOUNT
    assert events.pending() == [AuthenticationStatusChanged(True)]


@pytest.mark.asyncio
async def test_quick_authenticate_refreshes_near_expiry() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=120)
    await manager.initialize(CLIENT_ID)

    result = await manager.quick_authenticate()

    assert result.ok
    assert provider.silent_calls == 1
    assert manager.cache.get().bearer_token == "silent-1"
    stored = await _stored(store)
    assert stored.credential.bearer_token == "silent-1"
    assert stored.provider_state == provider_state(ACCOUNT)


@pytest.mark.asyncio
async def test_quick_authenticate_when_already_authenticated_is_offline() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=3600)
    await manager.initialize(CLIENT_ID)
    await manager.quick_authenticate()

    result = await manager.quick_authenticate()

    assert result.ok
    assert provider.silent_calls == 0
    assert provider.device_code_calls == 0


@pytest.mark.asyncio
async def test_quick_authenticate_falls_back_to_device_code() -> None:
    manager, provider, store, _ = make_manager()
    await manager.initialize(CLIENT_ID, SessionOptions(interactive_fallback=True))
    challenges = []

    result = await manager.quick_authenticate(challenges.append)

    assert result.ok
    assert provider.device_code_calls == 1
    assert [challenge.user_code for challenge in challenges] == ["ABCD-EFGH"]
    assert manager.state is SessionState.AUTHENTICATED
    assert (await _stored(store)).credential.bearer_token == "device-1"


@pytest.mark.asyncio
async def test_authenticate_success_persists() -> None:
    manager, provider, store, _ = make_manager()
    await manager.initialize(CLIENT_ID)
    provider.poll_results = [ProviderError("authorization_pending", status_code=400)]

    result = await manager.authenticate()

    assert result.ok
    assert result.value == ACCOUNT
    assert manager.state is SessionState.AUTHENTICATED
    assert provider.poll_calls == 2
    stored = await _stored(store)
    assert stored.credential == manager.cache.get()
    assert stored.provider_state == provider_state(ACCOUNT)


@pytest.mark.asyncio
async def test_authenticate_expired_code_returns_to_initialized() -> None:
    manager, provider, store, _ = make_manager()
    await manager.initialize(CLIENT_ID)
    provider.poll_results = [ProviderError("expired_token", status_code=400)]

    result = await manager.authenticate()

    assert result.error.code is AuthErrorCode.EXPIRED
    assert manager.state is SessionState.INITIALIZED
    assert await store.read(DEFAULT_CACHE_KEY) is None


@pytest.mark.asyncio
async def test_authenticate_cancelled_keeps_existing_credential() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=3600)
    await manager.initialize(CLIENT_ID)
    await manager.quick_authenticate()
    previous = manager.cache.get()
    cancellation = asyncio.Event()
    cancellation.set()

    result = await manager.authenticate(cancellation=cancellation)

    assert result.error.code is AuthErrorCode.CANCELLED
    assert manager.state is SessionState.INITIALIZED
    assert provider.poll_calls == 0
    assert manager.cache.get() is previous


@pytest.mark.asyncio
async def test_sign_out_is_idempotent() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=3600)
    events = manager.status.subscribe()
    await manager.initialize(CLIENT_ID)
    await manager.quick_authenticate()

    first = await manager.sign_out()
    second = await manager.sign_out()

    assert first.ok and second.ok
    assert manager.state is SessionState.SIGNED_OUT
    assert manager.cache.get() is None
    assert manager.current_account is None
    assert await store.read(DEFAULT_CACHE_KEY) is None
    assert provider.removed == [ACCOUNT]
    assert events.pending() == [
        AuthenticationStatusChanged(True),
        AuthenticationStatusChanged(False),
    ]


@pytest.mark.asyncio
async def test_authenticate_after_sign_out() -> None:
    manager, _, _, _ = make_manager()
    await manager.initialize(CLIENT_ID)
    await manager.sign_out()

    result = await manager.authenticate()

    assert result.ok
    assert manager.state is SessionState.AUTHENTICATED


@pytest.mark.asyncio
async def test_sign_out_reports_store_failure() -> None:
    manager, _, _, _ = make_manager(FailingDeleteStore())
    await manager.initialize(CLIENT_ID)
    await manager.authenticate()

    result = await manager.sign_out()

    assert result.error.code is AuthErrorCode.UNKNOWN
    assert "read-only" in result.message
    assert manager.state is SessionState.SIGNED_OUT
    assert manager.cache.get() is None


@pytest.mark.asyncio
async def test_corrupt_blob_is_treated_as_absent() -> None:
    manager, provider, store, _ = make_manager()
    await store.write(DEFAULT_CACHE_KEY, b"definitely-not-a-token-cache")

    assert (await manager.initialize(CLIENT_ID)).ok
    result = await manager.quick_authenticate()

    assert result.error.code is AuthErrorCode.REAUTH_REQUIRED
    assert provider.silent_calls == 0


@pytest.mark.asyncio
async def test_blob_from_other_client_is_ignored() -> None:
    manager, _, store, clock = make_manager()
    blob = PersistedBlob(credential=make_credential(now=clock()))
    await store.write(DEFAULT_CACHE_KEY, token_blob.encode(blob, token_blob.derive_key("client-2")))

    await manager.initialize(CLIENT_ID)

    assert manager.cache.get() is None


@pytest.mark.asyncio
async def test_get_access_token_requires_authentication() -> None:
    manager, _, _, _ = make_manager()
    await manager.initialize(CLIENT_ID)

    with pytest.raises(AuthError) as excinfo:
        await manager.get_access_token()

    assert excinfo.value.code is AuthErrorCode.REAUTH_REQUIRED


@pytest.mark.asyncio
async def test_get_access_token_refreshes_ahead_of_expiry() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=3600)
    await manager.initialize(CLIENT_ID)
    await manager.quick_authenticate()

    assert await manager.get_access_token() == "cached"
    clock.advance(3400)
    assert await manager.get_access_token() == "silent-1"
    assert provider.silent_calls == 1


@pytest.mark.asyncio
async def test_get_access_token_rejected_refresh_drops_session() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=3600)
    events = manager.status.subscribe()
    await manager.initialize(CLIENT_ID)
    await manager.quick_authenticate()
    provider.silent_results = [ProviderError("invalid_grant", status_code=400)]
    clock.advance(3500)

    with pytest.raises(AuthError) as excinfo:
        await manager.get_access_token()

    assert excinfo.value.code is AuthErrorCode.REAUTH_REQUIRED
    assert manager.state is SessionState.INITIALIZED
    assert (await _stored(store)).credential is None
    assert events.pending()[-1] == AuthenticationStatusChanged(False)


@pytest.mark.asyncio
async def test_aclose_closes_provider() -> None:
    manager, provider, _, _ = make_manager()
    await manager.initialize(CLIENT_ID)

    await manager.aclose()

    assert provider.closed


@pytest.mark.asyncio
async def test_default_provider_uses_authority() -> None:
    manager = AuthSessionManager(MemoryTokenStore())

    await manager.initialize(
        CLIENT_ID, SessionOptions(authority="https://login.microsoftonline.com/consumers/")
    )

    assert manager._provider.token_url == (
        "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
    )
    await manager.aclose()


@pytest.mark.asyncio
async def test_token_request_and_quick_authenticate_share_one_refresh() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=3600)
    await manager.initialize(CLIENT_ID)
    await manager.quick_authenticate()
    clock.advance(3480)
    provider.silent_gate = asyncio.Event()

    tasks = [
        asyncio.ensure_future(manager.get_access_token()),
        asyncio.ensure_future(manager.quick_authenticate()),
        asyncio.ensure_future(manager.get_access_token()),
    ]
    for _ in range(3):
        await asyncio.sleep(0)
    provider.silent_gate.set()
    first, result, second = await asyncio.gather(*tasks)

    assert provider.silent_calls == 1
    assert first == second == "silent-1"
    assert result.ok
    assert manager.cache.get().bearer_token == "silent-1"


@pytest.mark.asyncio
async def test_quick_authenticate_after_sign_out_leaves_store_empty() -> None:
    manager, provider, store, clock = make_manager()
    await seed_store(store, clock, expires_in=3600)
    await manager.initialize(CLIENT_ID)
    await manager.quick_authenticate()
    await manager.sign_out()

    result = await manager.quick_authenticate()

    assert result.error.code is AuthErrorCode.REAUTH_REQUIRED
    assert provider.silent_calls == 0
    assert await store.read(DEFAULT_CACHE_KEY) is None


@pytest.mark.asyncio
async def test_undecodable_token_file_is_treated_as_absent(tmp_path) -> None:
    path = tmp_path / "token_cache.json"
    path.write_bytes(b"\xff\xfe\xfa garbage")
    manager, provider, _, _ = make_manager(FileTokenStore(path))

    assert (await manager.initialize(CLIENT_ID)).ok
    assert manager.state is SessionState.INITIALIZED
    assert manager.cache.get() is None

    result = await manager.quick_authenticate()

    assert result.error.code is AuthErrorCode.REAUTH_REQUIRED
    assert provider.silent_calls == 0
