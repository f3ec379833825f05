from __future__ import annotations

from pathlib import Path
from typing import Sequence

import httpx
import pytest
from fastapi.testclient import TestClient

from pagesnap import main as app_main
from pagesnap.bundler import BundlingError
from pagesnap.processor import TaskOptions
from pagesnap.scheduler import JobQueueStats, SchedulerStats
from pagesnap.store import JobRecord, JobStateError, JobStatus, Store, UrlStatus
from tests.fakes import TINY_PNG, storage_settings


class StubRuntime:
    """Backed by a real store; scheduling and bundling are recorded instead of run."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self.submitted: list[tuple[list[str], str | None, str | None, TaskOptions | None]] = []
        self.bundle_error: Exception | None = None

    async def submit(
        self,
        urls: Sequence[str],
        *,
        job_id: str | None = None,
        sitemap_url: str | None = None,
        options: TaskOptions | None = None,
    ) -> JobRecord:
        self.submitted.append((list(urls), job_id, sitemap_url, options))
        existing = self.store.fetch_job(job_id) if job_id else None
        if existing is not None and existing.status != JobStatus.RUNNING.value:
            raise JobStateError(f"Job {job_id} is {existing.status}")
        return existing or self.store.create_job(job_id=job_id or "1700000000000", urls=urls, sitemap_url=sitemap_url)

    async def cancel(self, job_id: str) -> bool:
        return self.store.mark_cancelled(job_id)

    def get_stats(self) -> SchedulerStats:
        return SchedulerStats(
            queue_depth=3,
            workers=2,
            busy_workers=1,
            active_sessions=1,
            jobs={"job-1": JobQueueStats(dispatched=4, queued=3, in_flight=1)},
        )

    async def ensure_archive(self, job_id: str) -> Path:
        return self._artifact(job_id, self.store.paths_for(job_id).archive_path)

    async def ensure_document(self, job_id: str) -> Path:
        return self._artifact(job_id, self.store.paths_for(job_id).document_path)

    def _artifact(self, job_id: str, path: Path) -> Path:
        record = self.store.get_job(job_id)
        if record.status == JobStatus.CANCELLED.value:
            raise JobStateError(f"Job {job_id} was cancelled")
        if self.bundle_error is not None:
            raise self.bundle_error
        path.write_bytes(b"artifact")
        return path


@pytest.fixture()
def runtime(tmp_path: Path) -> StubRuntime:
    return StubRuntime(Store(storage_settings(tmp_path)))


@pytest.fixture()
def client(monkeypatch, runtime: StubRuntime) -> TestClient:
    monkeypatch.setattr(app_main, "RUNTIME", runtime)
    return TestClient(app_main.app)


def test_health(client: TestClient):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_job_from_urls(client: TestClient, runtime: StubRuntime):
    response = client.post(
        "/jobs",
        json={"job_id": "job-1", "urls": ["https://a.test/", " "], "highlight_links": False, "capture_width": 1280},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["id"] == "job-1"
    assert body["status"] == "running"
    assert body["total_urls"] == 1
    urls, job_id, sitemap_url, options = runtime.submitted[0]
    assert urls == ["https://a.test/"]
    assert job_id == "job-1"
    assert sitemap_url is None
    assert options == TaskOptions(highlight_links=False, capture_width=1280)


def test_create_job_requires_a_source(client: TestClient):
    assert client.post("/jobs", json={"urls": []}).status_code == 422
    assert client.post("/jobs", json={"urls": ["https://a.test/"], "capture_width": 10}).status_code == 422


def test_create_job_from_sitemap(client: TestClient, runtime: StubRuntime, monkeypatch):
    async def fake_fetch(url: str) -> list[str]:
        assert url == "https://site.test/sitemap.xml"
        return ["https://site.test/", "https://site.test/about"]

    monkeypatch.setattr(app_main, "fetch_sitemap_urls", fake_fetch)

    response = client.post("/jobs", json={"job_id": "job-1", "sitemap_url": "https://site.test/sitemap.xml"})

    assert response.status_code == 202
    assert response.json()["sitemap_url"] == "https://site.test/sitemap.xml"
    assert runtime.submitted[0][0] == ["https://site.test/", "https://site.test/about"]


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (ValueError("Sitemap contains no URLs"), 400),
        (httpx.ConnectError("connection refused"), 502),
    ],
)
def test_create_job_sitemap_failures(client: TestClient, monkeypatch, error: Exception, code: int):
    async def fake_fetch(url: str) -> list[str]:
        raise error

    monkeypatch.setattr(app_main, "fetch_sitemap_urls", fake_fetch)

    response = client.post("/jobs", json={"sitemap_url": "https://site.test/sitemap.xml"})

    assert response.status_code == code


def test_create_job_conflicts(client: TestClient, runtime: StubRuntime):
    runtime.store.create_job(job_id="job-1", urls=["https://a.test/"])
    runtime.store.mark_cancelled("job-1")

    response = client.post("/jobs", json={"job_id": "job-1", "urls": ["https://a.test/"]})

    assert response.status_code == 409
    assert client.post("/jobs", json={"job_id": "../x", "urls": ["https://a.test/"]}).status_code == 400


def test_list_latest_and_detail(client: TestClient, runtime: StubRuntime):
    store = runtime.store
    store.create_job(job_id="job-1", urls=["https://a.test/", "https://b.test/"])
    image = store.paths_for("job-1").screenshots_dir / "page-1-https___a_test_.png"
    store.update_url_status(job_id="job-1", url="https://a.test/", status=UrlStatus.COMPLETED, image_path=str(image))

    listed = client.get("/jobs", params={"limit": 10}).json()
    latest = client.get("/jobs/latest").json()
    detail = client.get("/jobs/job-1").json()

    assert [job["id"] for job in listed] == ["job-1"]
    assert latest["id"] == "job-1"
    assert detail["completed_urls"] == 1
    assert detail["counts"] == {"to_do": 1, "completed": 1, "error": 0}
    assert detail["urls"][0]["screenshot"] == image.name
    assert detail["urls"][1]["screenshot"] is None
    assert client.get("/jobs/missing").status_code == 404


def test_latest_without_jobs(client: TestClient):
    assert client.get("/jobs/latest").status_code == 404


def test_cancel_job(client: TestClient, runtime: StubRuntime):
    runtime.store.create_job(job_id="job-1", urls=["https://a.test/"])

    first = client.delete("/jobs/job-1").json()
    second = client.delete("/jobs/job-1").json()

    assert first == {"job_id": "job-1", "cancelled": True, "status": "cancelled"}
    assert second["cancelled"] is False
    assert client.delete("/jobs/missing").status_code == 404


def test_download_artifacts(client: TestClient, runtime: StubRuntime):
    runtime.store.create_job(job_id="job-1", urls=["https://a.test/"])

    archive = client.get("/jobs/job-1/archive")
    document = client.get("/jobs/job-1/document")

    assert archive.status_code == 200
    assert archive.content == b"artifact"
    assert "screenshots-job-1.zip" in archive.headers["content-disposition"]
    assert document.headers["content-type"] == "application/pdf"
    assert client.get("/jobs/missing/archive").status_code == 404


def test_download_errors(client: TestClient, runtime: StubRuntime):
    runtime.store.create_job(job_id="job-1", urls=["https://a.test/"])
    runtime.bundle_error = BundlingError("Job job-1 has no screenshots to bundle")
    assert client.get("/jobs/job-1/document").status_code == 500

    runtime.store.mark_cancelled("job-1")
    assert client.get("/jobs/job-1/archive").status_code == 409


def test_screenshot_route(client: TestClient, runtime: StubRuntime):
    runtime.store.create_job(job_id="job-1", urls=["https://a.test/"])
    (runtime.store.paths_for("job-1").screenshots_dir / "page-1-a.png").write_bytes(TINY_PNG)

    response = client.get("/jobs/job-1/screenshots/page-1-a.png")

    assert response.status_code == 200
    assert response.content == TINY_PNG
    assert client.get("/jobs/job-1/screenshots/page-9-b.png").status_code == 404


def test_stats(client: TestClient):
    body = client.get("/stats").json()

    assert body["queue_depth"] == 3
    assert body["jobs"]["job-1"] == {"dispatched": 4, "queued": 3, "in_flight": 1}


def test_routes_without_runtime(monkeypatch):
    monkeypatch.setattr(app_main, "RUNTIME", None)
    client = TestClient(app_main.app)

    assert client.get("/stats").status_code == 503
