"""Per-URL capture pipeline: navigate, settle, scroll, annotate, screenshot."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, TypeVar

from .annotate import annotate_outbound_links
from .automation import AutomationPage, AutomationSession
from .consent import dismiss_consent_banners
from .settings import BrowserSettings
from .store import Store, UrlStatus

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]")
_FILENAME_PATTERN = re.compile(r"^page-\d+-(.*?)\.png$")
_MAX_URL_CHARS = 100

_SCROLL_SCRIPT = """
async (options) => {
    return await new Promise((resolve) => {
        let travelled = 0;
        let steps = 0;
        const timer = setInterval(() => {
            const root = document.scrollingElement || document.body;
            window.scrollBy(0, options.step);
            travelled += options.step;
            steps += 1;
            if (travelled >= root.scrollHeight || steps >= options.maxSteps) {
                clearInterval(timer);
                window.scrollTo(0, 0);
                resolve(steps);
            }
        }, options.interval);
    });
}
"""


@dataclass(frozen=True, slots=True)
class TaskOptions:
    """Per-task capture switches carried on every queue item."""

    highlight_links: bool = True
    capture_width: int | None = None


@dataclass(slots=True)
class TaskOutcome:
    url: str
    task_index: int
    status: UrlStatus
    image_path: Path | None = None
    error: str | None = None
    outbound_links: int = 0


def screenshot_filename(task_index: int, url: str) -> str:
    """``page-<n>-<url with non-alphanumerics as _, first 100 chars>.png`` (n is 1-based)."""

    return f"page-{task_index + 1}-{_UNSAFE_CHARS.sub('_', url)[:_MAX_URL_CHARS]}.png"


def url_from_filename(filename: str) -> str | None:
    """Best-effort inverse of :func:`screenshot_filename`; lossy by nature."""

    match = _FILENAME_PATTERN.match(filename)
    if not match:
        return None
    return match.group(1).replace("_", "/")


class PageProcessor:
    """Runs one capture task against a job's browser session and reports it."""

    def __init__(self, *, store: Store, settings: BrowserSettings) -> None:
        self._store = store
        self._settings = settings

    async def process(
        self,
        session: AutomationSession,
        *,
        job_id: str,
        url: str,
        task_index: int,
        options: TaskOptions,
    ) -> TaskOutcome:
        outcome = await self.capture(session, job_id=job_id, url=url, task_index=task_index, options=options)
        await self.report(job_id, outcome)
        return outcome

    async def capture(
        self,
        session: AutomationSession,
        *,
        job_id: str,
        url: str,
        task_index: int,
        options: TaskOptions,
    ) -> TaskOutcome:
        """Drive the page and return the outcome without touching the store."""

        viewport_width = options.capture_width or self._settings.viewport_width
        try:
            page = await self._step(
                session.new_page(viewport_width=viewport_width, viewport_height=self._settings.viewport_height)
            )
        except Exception as exc:
            LOGGER.warning("Could not open a page for %s (job %s): %s", url, job_id, exc)
            return TaskOutcome(url=url, task_index=task_index, status=UrlStatus.ERROR, error=_describe(exc))

        try:
            target = self._store.paths_for(job_id).screenshots_dir / screenshot_filename(task_index, url)
            links = await self._run_steps(page, url=url, target=target, options=options)
        except Exception as exc:
            LOGGER.warning("Capture failed for %s (job %s): %s", url, job_id, _describe(exc))
            return TaskOutcome(url=url, task_index=task_index, status=UrlStatus.ERROR, error=_describe(exc))
        finally:
            await self._close(page, url)

        LOGGER.info("Captured %s for job %s", url, job_id)
        return TaskOutcome(
            url=url,
            task_index=task_index,
            status=UrlStatus.COMPLETED,
            image_path=target,
            outbound_links=links,
        )

    async def report(self, job_id: str, outcome: TaskOutcome) -> bool:
        return await asyncio.to_thread(
            self._store.update_url_status,
            job_id=job_id,
            url=outcome.url,
            status=outcome.status,
            image_path=str(outcome.image_path) if outcome.image_path else None,
        )

    async def _run_steps(self, page: AutomationPage, *, url: str, target: Path, options: TaskOptions) -> int:
        cfg = self._settings
        await self._step(page.goto(url, timeout_ms=cfg.navigation_timeout_ms))
        await self._step(page.wait(cfg.pre_scroll_settle_ms))
        await self._step(
            page.evaluate(
                _SCROLL_SCRIPT,
                {"step": cfg.scroll_step_px, "interval": cfg.scroll_interval_ms, "maxSteps": cfg.max_scroll_steps},
            )
        )
        await self._step(page.wait(cfg.post_scroll_settle_ms))
        await self._step(dismiss_consent_banners(page))

        links = 0
        if options.highlight_links:
            links = len(await self._step(annotate_outbound_links(page, url)))

        target.parent.mkdir(parents=True, exist_ok=True)
        await self._step(page.screenshot(target))
        return links

    async def _step(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._settings.step_timeout_seconds)

    async def _close(self, page: AutomationPage, url: str) -> None:
        try:
            await page.close()
        except Exception as exc:  # pragma: no cover - logging only
            LOGGER.debug("Closing page for %s failed: %s", url, exc)


def _describe(exc: BaseException) -> str:
    message = str(exc)
    if isinstance(exc, asyncio.TimeoutError) and not message:
        return "step timed out"
    return message or exc.__class__.__name__
