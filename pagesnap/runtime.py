"""Wiring for the long-lived crawler components owned by one process."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Sequence

from .automation import PlaywrightLauncher, SessionLauncher
from .bundler import ArtifactBundler
from .cleanup import run_cleanup_loop
from .processor import PageProcessor, TaskOptions
from .scheduler import FairScheduler, SchedulerStats
from .sessions import BrowserSessionManager
from .settings import Settings, get_settings
from .store import JobRecord, Store, build_store

LOGGER = logging.getLogger(__name__)


@dataclass
class Runtime:
    """The core surface: submit, cancel, stats and on-demand bundling."""

    settings: Settings
    store: Store
    launcher: SessionLauncher
    sessions: BrowserSessionManager
    processor: PageProcessor
    bundler: ArtifactBundler
    scheduler: FairScheduler
    cleanup_enabled: bool = True
    _cleanup_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    async def start(self) -> None:
        resumed = await self.scheduler.resume_incomplete()
        if resumed:
            LOGGER.info("Resumed %d running job(s) from the store", len(resumed))
        if self.cleanup_enabled and (self._cleanup_task is None or self._cleanup_task.done()):
            self._cleanup_task = asyncio.create_task(
                run_cleanup_loop(
                    self.store,
                    older_than=timedelta(days=self.settings.cleanup.retention_days),
                    interval_seconds=self.settings.cleanup.interval_hours * 3600,
                    on_deleted=self.scheduler.forget,
                )
            )

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.scheduler.stop()
        await self.sessions.close_all()
        shutdown = getattr(self.launcher, "shutdown", None)
        if shutdown is not None:
            await shutdown()

    async def submit(
        self,
        urls: Sequence[str],
        *,
        job_id: str | None = None,
        sitemap_url: str | None = None,
        options: TaskOptions | None = None,
    ) -> JobRecord:
        return await self.scheduler.submit(urls, job_id=job_id, sitemap_url=sitemap_url, options=options)

    async def cancel(self, job_id: str) -> bool:
        return await self.scheduler.cancel(job_id)

    def get_stats(self) -> SchedulerStats:
        return self.scheduler.get_stats()

    async def ensure_archive(self, job_id: str) -> Path:
        return await self.bundler.ensure_archive(job_id)

    async def ensure_document(self, job_id: str) -> Path:
        return await self.bundler.ensure_document(job_id)


def build_runtime(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    launcher: SessionLauncher | None = None,
    cleanup_enabled: bool = True,
) -> Runtime:
    settings = settings or get_settings()
    store = store or build_store(settings.storage)
    launcher = launcher or PlaywrightLauncher(settings.browser)
    sessions = BrowserSessionManager(
        launcher=launcher,
        store=store,
        settings=settings.browser,
        release_grace_seconds=settings.scheduler.release_grace_seconds,
    )
    processor = PageProcessor(store=store, settings=settings.browser)
    bundler = ArtifactBundler(store=store, settings=settings.bundle)
    scheduler = FairScheduler(
        store=store,
        processor=processor,
        sessions=sessions,
        settings=settings.scheduler,
        bundler=bundler,
    )
    return Runtime(
        settings=settings,
        store=store,
        launcher=launcher,
        sessions=sessions,
        processor=processor,
        bundler=bundler,
        scheduler=scheduler,
        cleanup_enabled=cleanup_enabled,
    )
