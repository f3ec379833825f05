"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from .scheduler import SchedulerStats
from .store import JobRecord, UrlRecord


class JobCreateRequest(BaseModel):
    """Payload clients submit to start (or resume) a crawl job."""

    job_id: str | None = Field(default=None, description="Caller-chosen job id; time-derived when omitted")
    sitemap_url: str | None = Field(default=None, description="Sitemap whose <loc> entries become the job's URLs")
    urls: list[str] = Field(default_factory=list, description="Literal URL list (used when no sitemap is given)")
    highlight_links: bool = Field(default=True, description="Outline and number outbound links before capture")
    capture_width: int | None = Field(default=None, ge=320, le=7680, description="Viewport width override in px")

    @model_validator(mode="after")
    def _require_source(self) -> JobCreateRequest:
        if not self.sitemap_url and not any(url.strip() for url in self.urls):
            raise ValueError("Provide sitemap_url or at least one URL")
        return self


class JobSummary(BaseModel):
    """Lightweight job view for listings and polling."""

    id: str
    status: str
    sitemap_url: str | None = None
    total_urls: int
    completed_urls: int
    highlight_links: bool
    capture_width: int | None = None
    created_at: datetime
    completed_at: datetime | None = None
    archive_size: int | None = None
    has_archive: bool = False
    has_document: bool = False

    @classmethod
    def from_record(cls, record: JobRecord) -> JobSummary:
        return cls(
            id=record.id,
            status=record.status,
            sitemap_url=record.sitemap_url,
            total_urls=record.total_urls,
            completed_urls=record.completed_urls,
            highlight_links=record.highlight_links,
            capture_width=record.capture_width,
            created_at=record.created_at,
            completed_at=record.completed_at,
            archive_size=record.archive_size,
            has_archive=bool(record.archive_path),
            has_document=bool(record.document_path),
        )


class UrlTaskView(BaseModel):
    position: int
    url: str
    status: str
    screenshot: str | None = Field(default=None, description="File name under /jobs/{id}/screenshots/")
    processed_at: datetime | None = None

    @classmethod
    def from_record(cls, record: UrlRecord) -> UrlTaskView:
        return cls(
            position=record.position,
            url=record.url,
            status=record.status,
            screenshot=Path(record.image_path).name if record.image_path else None,
            processed_at=record.processed_at,
        )


class JobDetail(JobSummary):
    counts: dict[str, int] = Field(default_factory=dict, description="Task counts keyed by status")
    urls: list[UrlTaskView] = Field(default_factory=list)


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool
    status: str


class JobQueueView(BaseModel):
    dispatched: int
    queued: int
    in_flight: int


class StatsResponse(BaseModel):
    """Scheduler snapshot."""

    queue_depth: int
    workers: int
    busy_workers: int
    active_sessions: int
    jobs: dict[str, JobQueueView]

    @classmethod
    def from_stats(cls, stats: SchedulerStats) -> StatsResponse:
        return cls(
            queue_depth=stats.queue_depth,
            workers=stats.workers,
            busy_workers=stats.busy_workers,
            active_sessions=stats.active_sessions,
            jobs={
                job_id: JobQueueView(dispatched=job.dispatched, queued=job.queued, in_flight=job.in_flight)
                for job_id, job in stats.jobs.items()
            },
        )
