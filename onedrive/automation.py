"""Clipboard and browser side effects for the device code sign-in.

Every side effect runs through an :class:`EnvironmentExecutor` with a bounded
wait. A failure or timeout is logged together with the manual fallback and
never fails authentication.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
import sys
import webbrowser
from functools import partial
from typing import Any, Callable, Protocol, TypeVar
from urllib.parse import urlparse

from auth.models import DeviceCodeChallenge

from .constants import DEFAULT_AUTOMATION_TIMEOUT_SECONDS, LOGGER
from .env import OneDriveConfig

T = TypeVar("T")

CLIPBOARD_COMMANDS: dict[str, list[list[str]]] = {
    "darwin": [["pbcopy"]],
    "win32": [["clip"]],
    "linux": [
        ["wl-copy"],
        ["xclip", "-selection", "clipboard"],
        ["xsel", "--clipboard", "--input"],
    ],
}


class EnvironmentExecutor(Protocol):
    async def run(self, fn: Callable[[], T], timeout: float) -> T: ...


class ThreadExecutor:
    """Runs blocking side effects in a worker thread."""

    async def run(self, fn: Callable[[], T], timeout: float) -> T:
        return await asyncio.wait_for(asyncio.to_thread(fn), timeout)


class LoopExecutor:
    """Runs side effects on the event loop that owns the UI or main thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    async def run(self, fn: Callable[[], T], timeout: float) -> T:
        running = asyncio.get_running_loop()
        owner = self._loop or running
        if owner is running:
            return fn()

        future = asyncio.run_coroutine_threadsafe(_call(fn), owner)
        return await asyncio.wait_for(asyncio.wrap_future(future), timeout)


async def _call(fn: Callable[[], T]) -> T:
    return fn()


class ClipboardHelper:
    def __init__(
        self,
        executor: EnvironmentExecutor | None = None,
        *,
        timeout: float = DEFAULT_AUTOMATION_TIMEOUT_SECONDS,
        platform: str = sys.platform,
        which: Callable[[str], str | None] = shutil.which,
        run: Callable[..., Any] = subprocess.run,
    ) -> None:
        self._executor = executor or ThreadExecutor()
        self._timeout = timeout
        self._platform = platform
        self._which = which
        self._run = run

    def command(self) -> list[str] | None:
        key = "linux" if self._platform.startswith("linux") else self._platform
        for candidate in CLIPBOARD_COMMANDS.get(key, []):
            if self._which(candidate[0]):
                return candidate
        return None

    async def copy(self, text: str) -> bool:
        if not text:
            return False

        try:
            await self._executor.run(partial(self._copy, text), self._timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out copying to clipboard after %ss", self._timeout)
            LOGGER.info("Device code: %s", text)
            return False
        except (OSError, RuntimeError, subprocess.SubprocessError) as error:
            LOGGER.warning("Clipboard access failed: %s", error)
            LOGGER.info("Device code: %s", text)
            return False

        LOGGER.info("Device code copied to clipboard")
        return True

    def _copy(self, text: str) -> None:
        command = self.command()
        if command is None:
            raise RuntimeError(f"no clipboard command available on {self._platform}")
        self._run(command, input=text.encode("utf-8"), check=True, capture_output=True)


class BrowserHelper:
    def __init__(
        self,
        executor: EnvironmentExecutor | None = None,
        *,
        timeout: float = DEFAULT_AUTOMATION_TIMEOUT_SECONDS,
        open_url: Callable[[str], bool] = webbrowser.open,
    ) -> None:
        self._executor = executor or ThreadExecutor()
        self._timeout = timeout
        self._open_url = open_url

    async def open(self, url: str) -> bool:
        parsed = urlparse(url or "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            LOGGER.warning("Refusing to open non-HTTP URL %r", url)
            return False

        try:
            opened = await self._executor.run(partial(self._open_url, url), self._timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out opening browser after %ss", self._timeout)
            LOGGER.info("Please open this URL manually: %s", url)
            return False
        except (OSError, webbrowser.Error) as error:
            LOGGER.warning("Browser open failed: %s", error)
            LOGGER.info("Please open this URL manually: %s", url)
            return False

        if not opened:
            LOGGER.info("No browser available. Please open this URL manually: %s", url)
            return False
        LOGGER.info("Browser opened at %s", url)
        return True


class DeviceCodeAutomation:
    """Device code callback that copies the user code and opens the verification page."""

    def __init__(
        self,
        clipboard: ClipboardHelper | None = None,
        browser: BrowserHelper | None = None,
        *,
        auto_copy: bool = True,
        auto_open: bool = True,
    ) -> None:
        self.clipboard = clipboard or ClipboardHelper()
        self.browser = browser or BrowserHelper()
        self.auto_copy = auto_copy
        self.auto_open = auto_open

    @classmethod
    def from_config(
        cls,
        config: OneDriveConfig,
        executor: EnvironmentExecutor | None = None,
    ) -> "DeviceCodeAutomation":
        executor = executor or ThreadExecutor()
        return cls(
            ClipboardHelper(executor, timeout=config.automation_timeout),
            BrowserHelper(executor, timeout=config.automation_timeout),
            auto_copy=config.auto_copy_to_clipboard,
            auto_open=config.auto_open_browser,
        )

    async def __call__(self, challenge: DeviceCodeChallenge) -> None:
        actions = []
        if self.auto_copy:
            actions.append(self.clipboard.copy(challenge.user_code))
        if self.auto_open:
            actions.append(self.browser.open(challenge.verification_uri))
        if actions:
            await asyncio.gather(*actions)
