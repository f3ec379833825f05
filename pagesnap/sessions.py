"""Per-job browser session lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict

from .automation import AutomationSession, SessionLauncher
from .consent import dismiss_consent_banners
from .settings import BrowserSettings
from .store import Store

LOGGER = logging.getLogger(__name__)


class BrowserSessionManager:
    """Hands out one browser session per job and tears it down once the job drains.

    Creation is serialized per job so concurrent workers never launch two
    browsers for the same job. The first creation for a job also primes the
    session by accepting consent banners on the job's first pending URL.
    """

    def __init__(
        self,
        *,
        launcher: SessionLauncher,
        store: Store,
        settings: BrowserSettings,
        release_grace_seconds: float = 5.0,
    ) -> None:
        self._launcher = launcher
        self._store = store
        self._settings = settings
        self._grace = release_grace_seconds
        self._sessions: Dict[str, AutomationSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._primed: set[str] = set()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def has_session(self, job_id: str) -> bool:
        return job_id in self._sessions

    def consent_primed(self, job_id: str) -> bool:
        return job_id in self._primed

    async def acquire_session(self, job_id: str) -> AutomationSession:
        session = self._sessions.get(job_id)
        if session is not None:
            return session
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(job_id)
            if session is not None:
                return session
            session = await self._launcher.launch(job_id)
            self._sessions[job_id] = session
            if job_id not in self._primed:
                self._primed.add(job_id)
                await self._prime_consent(job_id, session)
            return session

    async def _prime_consent(self, job_id: str, session: AutomationSession) -> None:
        pending = await asyncio.to_thread(self._store.list_pending_urls, job_id)
        if not pending:
            return
        url = pending[0]
        try:
            page = await session.new_page(
                viewport_width=self._settings.viewport_width,
                viewport_height=self._settings.viewport_height,
            )
        except Exception as exc:
            LOGGER.warning("Consent priming skipped for job %s: %s", job_id, exc)
            return
        try:
            await asyncio.wait_for(
                page.goto(url, timeout_ms=self._settings.navigation_timeout_ms),
                timeout=self._settings.step_timeout_seconds,
            )
            report = await dismiss_consent_banners(page, wait_ms=self._settings.consent_wait_ms)
            LOGGER.info("Consent primed for job %s via %s (clicked=%s)", job_id, url, report.clicked)
        except Exception as exc:
            LOGGER.warning("Consent priming failed for job %s on %s: %s", job_id, url, exc)
        finally:
            try:
                await page.close()
            except Exception as exc:  # pragma: no cover - logging only
                LOGGER.debug("Closing priming page for job %s failed: %s", job_id, exc)

    async def release_on_drain(self, job_id: str, is_idle: Callable[[], bool]) -> bool:
        """Close the job's session after the grace window if the job is still idle."""

        if self._grace > 0:
            await asyncio.sleep(self._grace)
        if not is_idle():
            LOGGER.debug("Job %s picked up new work; keeping its session", job_id)
            return False
        return await self.release(job_id)

    async def release(self, job_id: str) -> bool:
        session = self._sessions.pop(job_id, None)
        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            self._locks.pop(job_id, None)
        if session is None:
            return False
        try:
            await session.close()
        except Exception as exc:
            LOGGER.warning("Closing browser session for job %s failed: %s", job_id, exc)
        return True

    def forget(self, job_id: str) -> None:
        """Drop per-job bookkeeping for a finished job whose session is gone."""

        if job_id in self._sessions:
            return
        self._primed.discard(job_id)
        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._locks[job_id]

    async def close_all(self) -> None:
        for job_id in list(self._sessions):
            await self.release(job_id)
