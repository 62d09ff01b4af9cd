import pytest

from auth.credential_cache import CredentialCache
from auth.events import AuthenticationStatusChanged, StatusChannel
from provider_helpers import FakeClock, make_credential


def _cache():
    clock = FakeClock()
    status = StatusChannel()
    return CredentialCache(status=status, clock=clock), status.subscribe(), clock


def test_set_get_clear_round_trip() -> None:
    cache, _, _ = _cache()
    credential = make_credential()

    assert cache.get() is None
    cache.set(credential)
    assert cache.get() is credential
    cache.clear()
    assert cache.get() is None


def test_set_replaces_reference() -> None:
    cache, _, _ = _cache()
    first = make_credential("access-1")
    second = make_credential("access-2")

    cache.set(first)
    cache.set(second)

    assert cache.get() is second
    assert first.bearer_token == "access-1"


def test_set_rejects_expired_credential() -> None:
    cache, events, _ = _cache()

    with pytest.raises(ValueError):
        cache.set(make_credential(expires_in=0))

    assert cache.get() is None
    assert events.pending() == []


@pytest.mark.parametrize(
    ("expires_in", "lead_time", "fresh"),
    [
        (600, 300, True),
        (120, 300, False),
        (300, 300, False),
        (120, 0, True),
    ],
)
def test_is_fresh_respects_lead_time(expires_in, lead_time, fresh) -> None:
    cache, _, _ = _cache()
    cache.set(make_credential(expires_in=expires_in))

    assert cache.is_fresh(lead_time) is fresh


def test_is_fresh_tracks_clock() -> None:
    cache, _, clock = _cache()
    cache.set(make_credential(expires_in=600))

    clock.advance(301)

    assert not cache.is_fresh()
    assert cache.is_fresh(0)


def test_empty_cache_is_not_fresh() -> None:
    cache, _, _ = _cache()

    assert not cache.is_fresh(0)


def test_events_published_on_transitions_only() -> None:
    cache, events, _ = _cache()

    cache.set(make_credential("access-1"))
    cache.set(make_credential("access-2"))
    cache.clear()
    cache.clear()

    assert events.pending() == [
        AuthenticationStatusChanged(True),
        AuthenticationStatusChanged(False),
    ]


def test_restore_is_silent() -> None:
    cache, events, _ = _cache()
    credential = make_credential()

    cache.restore(credential)
    cache.clear()

    assert events.pending() == []


def test_restore_then_set_announces() -> None:
    cache, events, _ = _cache()
    credential = make_credential()
    cache.restore(credential)

    cache.set(credential)

    assert events.pending() == [AuthenticationStatusChanged(True)]


def test_restore_ignores_expired_credential() -> None:
    cache, _, _ = _cache()

    cache.restore(make_credential(expires_in=-10))

    assert cache.get() is None
