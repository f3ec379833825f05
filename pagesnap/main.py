"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, status
from fastapi.responses import FileResponse

from .bundler import BundlingError
from .processor import TaskOptions
from .runtime import Runtime, build_runtime
from .schemas import CancelResponse, JobCreateRequest, JobDetail, JobSummary, StatsResponse, UrlTaskView
from .sitemap import fetch_sitemap_urls
from .store import JobStateError

LOGGER = logging.getLogger(__name__)

RUNTIME: Runtime | None = None


@asynccontextmanager
async def _lifespan(_: FastAPI):
    global RUNTIME
    if RUNTIME is None:
        RUNTIME = build_runtime()
    await RUNTIME.start()
    yield
    await RUNTIME.stop()


app = FastAPI(title="pagesnap", lifespan=_lifespan)


def _runtime() -> Runtime:
    if RUNTIME is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Runtime not started")
    return RUNTIME


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/jobs", response_model=JobSummary, status_code=status.HTTP_202_ACCEPTED)
async def create_job(request: JobCreateRequest) -> JobSummary:
    runtime = _runtime()
    urls = [url for url in request.urls if url.strip()]
    if request.sitemap_url and not urls:
        try:
            urls = await fetch_sitemap_urls(request.sitemap_url)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=502, detail=f"Sitemap fetch failed: {exc}") from exc
    options = TaskOptions(highlight_links=request.highlight_links, capture_width=request.capture_width)
    try:
        record = await runtime.submit(urls, job_id=request.job_id, sitemap_url=request.sitemap_url, options=options)
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JobSummary.from_record(record)


@app.get("/jobs", response_model=list[JobSummary])
async def list_jobs(limit: int = 50) -> list[JobSummary]:
    records = await asyncio.to_thread(_runtime().store.list_jobs, limit=limit)
    return [JobSummary.from_record(record) for record in records]


@app.get("/jobs/latest", response_model=JobSummary)
async def latest_job() -> JobSummary:
    record = await asyncio.to_thread(_runtime().store.latest_job)
    if record is None:
        raise HTTPException(status_code=404, detail="No jobs yet")
    return JobSummary.from_record(record)


@app.get("/jobs/{job_id}", response_model=JobDetail)
async def get_job(job_id: str) -> JobDetail:
    store = _runtime().store
    try:
        record = await asyncio.to_thread(store.get_job, job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    urls = await asyncio.to_thread(store.list_urls, job_id)
    counts = await asyncio.to_thread(store.count_by_status, job_id)
    summary = JobSummary.from_record(record)
    return JobDetail(**summary.model_dump(), counts=counts, urls=[UrlTaskView.from_record(url) for url in urls])


@app.delete("/jobs/{job_id}", response_model=CancelResponse)
async def cancel_job(job_id: str) -> CancelResponse:
    runtime = _runtime()
    try:
        cancelled = await runtime.cancel(job_id)
        record = await asyncio.to_thread(runtime.store.get_job, job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return CancelResponse(job_id=job_id, cancelled=cancelled, status=record.status)


@app.get("/jobs/{job_id}/archive")
async def download_archive(job_id: str) -> FileResponse:
    try:
        path = await _runtime().ensure_archive(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except BundlingError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return FileResponse(path, filename=path.name, media_type="application/zip")


@app.get("/jobs/{job_id}/document")
async def download_document(job_id: str) -> FileResponse:
    try:
        path = await _runtime().ensure_document(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except BundlingError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return FileResponse(path, filename=path.name, media_type="application/pdf")


@app.get("/jobs/{job_id}/screenshots/{filename}")
async def job_screenshot(job_id: str, filename: str) -> FileResponse:
    try:
        target = await asyncio.to_thread(_runtime().store.resolve_screenshot, job_id, filename)
    except (KeyError, FileNotFoundError) as exc:
        raise HTTPException(status_code=404, detail="Screenshot not found") from exc
    return FileResponse(target, media_type="image/png")


@app.get("/stats", response_model=StatsResponse)
async def stats() -> StatsResponse:
    return StatsResponse.from_stats(_runtime().get_stats())
