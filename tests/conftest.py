import pytest

from onedrive import api
from onedrive.env import OneDriveConfig


@pytest.fixture(autouse=True)
def reset_api_session(monkeypatch):
    monkeypatch.setattr(api, "_session", None)


@pytest.fixture
def config(tmp_path):
    return OneDriveConfig(
        client_id="client-1",
        token_cache_path=tmp_path / "token_cache.json",
        auto_copy_to_clipboard=False,
        auto_open_browser=False,
        interactive_fallback=False,
        http_max_retries=0,
    )
