"""In-memory stand-ins for the browser automation interface plus settings factories."""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any, Callable, Dict, List

from pagesnap.settings import (
    DEFAULT_USER_AGENT,
    BrowserSettings,
    BundleSettings,
    CleanupSettings,
    SchedulerSettings,
    Settings,
    StorageSettings,
)

# 1x1 white PNG.
TINY_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


def browser_settings(**overrides: Any) -> BrowserSettings:
    values: Dict[str, Any] = dict(
        channel="chromium",
        headless=True,
        viewport_width=1920,
        viewport_height=1080,
        user_agent=DEFAULT_USER_AGENT,
        navigation_timeout_ms=60_000,
        pre_scroll_settle_ms=0,
        post_scroll_settle_ms=0,
        scroll_step_px=100,
        scroll_interval_ms=100,
        max_scroll_steps=500,
        consent_wait_ms=0,
        step_timeout_seconds=5.0,
    )
    values.update(overrides)
    return BrowserSettings(**values)


def scheduler_settings(**overrides: Any) -> SchedulerSettings:
    values: Dict[str, Any] = dict(
        worker_count=2,
        idle_poll_seconds=0.01,
        release_grace_seconds=0.0,
        fault_requeue_limit=1,
        auto_archive=True,
        auto_document=False,
    )
    values.update(overrides)
    return SchedulerSettings(**values)


def bundle_settings(**overrides: Any) -> BundleSettings:
    values: Dict[str, Any] = dict(
        page_width_pt=595.28,
        page_height_pt=841.89,
        margin_pt=50.0,
        header_pt=50.0,
        overlap_px=100,
        render_scale=1.0,
        header_font_size=12,
        compression_level=3,
    )
    values.update(overrides)
    return BundleSettings(**values)


def storage_settings(tmp_path: Path) -> StorageSettings:
    return StorageSettings(output_root=tmp_path / "output", db_path=tmp_path / "pagesnap.db")


def make_settings(tmp_path: Path, *, browser: dict | None = None, scheduler: dict | None = None) -> Settings:
    return Settings(
        env_path="",
        browser=browser_settings(**(browser or {})),
        scheduler=scheduler_settings(**(scheduler or {})),
        storage=storage_settings(tmp_path),
        bundle=bundle_settings(),
        cleanup=CleanupSettings(retention_days=7, interval_hours=24.0),
    )


class FakePage:
    """Records every call; URL-specific behaviour comes from the owning browser."""

    def __init__(self, browser: "FakeBrowser", viewport: tuple[int, int]) -> None:
        self._browser = browser
        self.viewport = viewport
        self.calls: List[tuple[str, Any]] = []
        self.url: str | None = None
        self.closed = False

    async def goto(self, url: str, *, timeout_ms: int) -> None:
        self.calls.append(("goto", url))
        self.url = url
        behaviour = self._browser.behaviours.get(url)
        if behaviour == "timeout":
            raise asyncio.TimeoutError(f"Navigation timeout of {timeout_ms} ms exceeded")
        if behaviour == "error":
            raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")
        if behaviour == "hang":
            await asyncio.sleep(3600)
        gate = self._browser.gates.get(url)
        if gate is not None:
            await gate.wait()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.calls.append(("evaluate", arg))
        if "a.href" in script:
            return list(self._browser.hrefs)
        if "banner_selector" in script:
            return []
        if "getComputedStyle" in script:
            return 0
        if "scrollBy" in script:
            return 1
        if "data-pagesnap-legend" in script:
            return len(arg["urls"])
        return None

    async def wait(self, ms: int) -> None:
        self.calls.append(("wait", ms))

    async def press(self, key: str) -> None:
        self.calls.append(("press", key))

    async def screenshot(self, path: Path) -> None:
        self.calls.append(("screenshot", path))
        if self._browser.behaviours.get(self.url or "") == "screenshot-error":
            raise RuntimeError("screenshot failed")
        Path(path).write_bytes(TINY_PNG)

    async def close(self) -> None:
        self.closed = True

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]


class FakeSession:
    def __init__(self, browser: "FakeBrowser", job_id: str) -> None:
        self.browser = browser
        self.job_id = job_id
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self, *, viewport_width: int, viewport_height: int) -> FakePage:
        if self.browser.fail_new_page:
            raise RuntimeError("target closed")
        page = FakePage(self.browser, (viewport_width, viewport_height))
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    """Plays the role of the session launcher."""

    def __init__(self) -> None:
        self.behaviours: Dict[str, str] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.hrefs: List[str] = []
        self.sessions: List[FakeSession] = []
        self.fail_launch = False
        self.fail_new_page = False
        self.launch_delay = 0.0

    async def launch(self, job_id: str) -> FakeSession:
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if self.fail_launch:
            raise RuntimeError("browser failed to start")
        session = FakeSession(self, job_id)
        self.sessions.append(session)
        return session

    def visited(self) -> List[str]:
        return [
            page.url
            for session in self.sessions
            for page in session.pages
            if page.url and "screenshot" in page.call_names()
        ]


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
