"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "BrowserSettings",
    "SchedulerSettings",
    "StorageSettings",
    "BundleSettings",
    "CleanupSettings",
    "Settings",
    "DEFAULT_USER_AGENT",
    "default_worker_count",
    "load_config",
    "get_settings",
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)

# A4 in PDF points.
_A4_WIDTH_PT = 595.28
_A4_HEIGHT_PT = 841.89


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Knobs for the automated browser and the per-page capture pipeline."""

    channel: str
    headless: bool
    viewport_width: int
    viewport_height: int
    user_agent: str
    navigation_timeout_ms: int
    pre_scroll_settle_ms: int
    post_scroll_settle_ms: int
    scroll_step_px: int
    scroll_interval_ms: int
    max_scroll_steps: int
    consent_wait_ms: int
    step_timeout_seconds: float


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    """Worker pool sizing and job finalization behaviour."""

    worker_count: int
    idle_poll_seconds: float
    release_grace_seconds: float
    fault_requeue_limit: int
    auto_archive: bool
    auto_document: bool


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem + SQLite layout for job artifacts."""

    output_root: Path
    db_path: Path


@dataclass(frozen=True, slots=True)
class BundleSettings:
    """Archive compression and paginated document geometry."""

    page_width_pt: float
    page_height_pt: float
    margin_pt: float
    header_pt: float
    overlap_px: int
    render_scale: float
    header_font_size: int
    compression_level: int

    @property
    def content_width_pt(self) -> float:
        return self.page_width_pt - 2 * self.margin_pt

    @property
    def content_height_pt(self) -> float:
        """Usable height below the header band."""

        return self.page_height_pt - 2 * self.margin_pt - self.header_pt


@dataclass(frozen=True, slots=True)
class CleanupSettings:
    """Retention window for finished jobs."""

    retention_days: int
    interval_hours: float


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    browser: BrowserSettings
    scheduler: SchedulerSettings
    storage: StorageSettings
    bundle: BundleSettings
    cleanup: CleanupSettings


def default_worker_count() -> int:
    """Half the logical cores, never fewer than one worker."""

    return max(1, (os.cpu_count() or 1) // 2)


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Environment variables always win; a missing file just means no overrides.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    browser = BrowserSettings(
        channel=cfg("PAGESNAP_BROWSER_CHANNEL", default="chromium"),
        headless=_bool(cfg, "PAGESNAP_HEADLESS", default=True),
        viewport_width=_int(cfg, "PAGESNAP_VIEWPORT_WIDTH", default=1920),
        viewport_height=_int(cfg, "PAGESNAP_VIEWPORT_HEIGHT", default=1080),
        user_agent=cfg("PAGESNAP_USER_AGENT", default=DEFAULT_USER_AGENT),
        navigation_timeout_ms=_int(cfg, "PAGESNAP_NAVIGATION_TIMEOUT_MS", default=60_000),
        pre_scroll_settle_ms=_int(cfg, "PAGESNAP_PRE_SCROLL_SETTLE_MS", default=3_000),
        post_scroll_settle_ms=_int(cfg, "PAGESNAP_POST_SCROLL_SETTLE_MS", default=1_000),
        scroll_step_px=_int(cfg, "PAGESNAP_SCROLL_STEP_PX", default=100),
        scroll_interval_ms=_int(cfg, "PAGESNAP_SCROLL_INTERVAL_MS", default=100),
        max_scroll_steps=_int(cfg, "PAGESNAP_MAX_SCROLL_STEPS", default=500),
        consent_wait_ms=_int(cfg, "PAGESNAP_CONSENT_WAIT_MS", default=3_000),
        step_timeout_seconds=_float(cfg, "PAGESNAP_STEP_TIMEOUT_SECONDS", default=90.0),
    )

    scheduler = SchedulerSettings(
        worker_count=_int(cfg, "PAGESNAP_WORKERS", default=default_worker_count()),
        idle_poll_seconds=_float(cfg, "PAGESNAP_IDLE_POLL_SECONDS", default=0.5),
        release_grace_seconds=_float(cfg, "PAGESNAP_RELEASE_GRACE_SECONDS", default=5.0),
        fault_requeue_limit=_int(cfg, "PAGESNAP_FAULT_REQUEUE_LIMIT", default=1),
        auto_archive=_bool(cfg, "PAGESNAP_AUTO_ARCHIVE", default=True),
        auto_document=_bool(cfg, "PAGESNAP_AUTO_DOCUMENT", default=False),
    )

    storage = StorageSettings(
        output_root=Path(cfg("PAGESNAP_OUTPUT_ROOT", default="output")),
        db_path=Path(cfg("PAGESNAP_DB_PATH", default="pagesnap.db")),
    )

    bundle = BundleSettings(
        page_width_pt=_float(cfg, "PAGESNAP_PAGE_WIDTH_PT", default=_A4_WIDTH_PT),
        page_height_pt=_float(cfg, "PAGESNAP_PAGE_HEIGHT_PT", default=_A4_HEIGHT_PT),
        margin_pt=_float(cfg, "PAGESNAP_PAGE_MARGIN_PT", default=50.0),
        header_pt=_float(cfg, "PAGESNAP_PAGE_HEADER_PT", default=50.0),
        overlap_px=_int(cfg, "PAGESNAP_SLICE_OVERLAP_PX", default=100),
        render_scale=_float(cfg, "PAGESNAP_RENDER_SCALE", default=2.0),
        header_font_size=_int(cfg, "PAGESNAP_HEADER_FONT_SIZE", default=12),
        compression_level=_int(cfg, "PAGESNAP_ZIP_LEVEL", default=6),
    )

    cleanup = CleanupSettings(
        retention_days=_int(cfg, "PAGESNAP_RETENTION_DAYS", default=7),
        interval_hours=_float(cfg, "PAGESNAP_CLEANUP_INTERVAL_HOURS", default=24.0),
    )

    _validate(scheduler, bundle)

    return Settings(
        env_path=env_path,
        browser=browser,
        scheduler=scheduler,
        storage=storage,
        bundle=bundle,
        cleanup=cleanup,
    )


def _validate(scheduler: SchedulerSettings, bundle: BundleSettings) -> None:
    if scheduler.worker_count < 1:
        raise ValueError("PAGESNAP_WORKERS must be at least 1")
    if scheduler.idle_poll_seconds <= 0:
        raise ValueError("PAGESNAP_IDLE_POLL_SECONDS must be positive")
    if bundle.content_width_pt <= 0 or bundle.content_height_pt <= 0:
        raise ValueError("page margins leave no room for content")
    if bundle.overlap_px < 0:
        raise ValueError("PAGESNAP_SLICE_OVERLAP_PX must not be negative")
    if not 0 <= bundle.compression_level <= 9:
        raise ValueError("PAGESNAP_ZIP_LEVEL must be between 0 and 9")
