from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any

from typer.testing import CliRunner

from pagesnap import cli

runner = CliRunner()


class StubResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, content: bytes = b"") -> None:
        self.payload = payload
        self.status_code = status_code
        self.content = content
        self.text = str(payload)

    def json(self):  # noqa: ANN001
        return self.payload


class StubClient:
    def __init__(self, responses: dict[tuple[str, str], StubResponse]) -> None:
        self.responses = responses
        self.requests: list[tuple[str, str, Any]] = []

    def _respond(self, method: str, path: str, body: Any = None) -> StubResponse:
        self.requests.append((method, path, body))
        response = self.responses.get((method, path))
        if response is None:
            raise KeyError(f"unexpected {method} {path}")
        return response

    def get(self, path: str):  # noqa: ANN001
        return self._respond("GET", path)

    def post(self, path: str, json=None):  # noqa: ANN001
        return self._respond("POST", path, json)

    def delete(self, path: str):  # noqa: ANN001
        return self._respond("DELETE", path)


def _install(monkeypatch, responses: dict[tuple[str, str], StubResponse]) -> StubClient:
    client = StubClient(responses)

    def fake_client_ctx(settings):  # noqa: ANN001, ARG001
        @contextmanager
        def _ctx():
            yield client

        return _ctx()

    monkeypatch.setattr(cli, "_client_ctx", fake_client_ctx)
    monkeypatch.setattr(
        cli,
        "_resolve_settings",
        lambda base: cli.APISettings(base_url="http://localhost", api_timeout=5.0),
    )
    return client


def _job(**overrides: Any) -> dict[str, Any]:
    job = {
        "id": "job-1",
        "status": "running",
        "total_urls": 2,
        "completed_urls": 1,
        "created_at": "2024-01-01T00:00:00",
        "has_archive": False,
    }
    job.update(overrides)
    return job


def test_submit_posts_payload(monkeypatch):
    client = _install(monkeypatch, {("POST", "/jobs"): StubResponse(_job(), status_code=202)})

    result = runner.invoke(
        cli.cli, ["submit", "https://a.test/", "https://b.test/", "--job-id", "job-1", "--no-highlight"]
    )

    assert result.exit_code == 0, result.output
    assert "job-1" in result.output
    _, _, payload = client.requests[0]
    assert payload["urls"] == ["https://a.test/", "https://b.test/"]
    assert payload["job_id"] == "job-1"
    assert payload["highlight_links"] is False
    assert payload["sitemap_url"] is None


def test_submit_requires_source(monkeypatch):
    _install(monkeypatch, {})

    result = runner.invoke(cli.cli, ["submit"])

    assert result.exit_code != 0


def test_submit_reports_api_errors(monkeypatch):
    _install(monkeypatch, {("POST", "/jobs"): StubResponse({"detail": "Job job-1 is cancelled"}, status_code=409)})

    result = runner.invoke(cli.cli, ["submit", "--sitemap", "https://a.test/sitemap.xml"])

    assert result.exit_code == 1
    assert "409" in result.output
    assert "cancelled" in result.output


def test_jobs_lists_and_prints_json(monkeypatch):
    _install(monkeypatch, {("GET", "/jobs?limit=5"): StubResponse([_job(status="completed", has_archive=True)])})

    table = runner.invoke(cli.cli, ["jobs", "--limit", "5"])
    raw = runner.invoke(cli.cli, ["jobs", "--limit", "5", "--json"])

    assert table.exit_code == 0
    assert "job-1" in table.output
    assert "completed" in table.output
    assert '"status": "completed"' in raw.output


def test_show_latest_resolves_job(monkeypatch):
    detail = _job(
        counts={"to_do": 1, "completed": 1, "error": 0},
        urls=[
            {"position": 0, "url": "https://a.test/", "status": "completed", "screenshot": "page-1-a.png"},
            {"position": 1, "url": "https://b.test/", "status": "to_do", "screenshot": None},
        ],
    )
    client = _install(
        monkeypatch,
        {
            ("GET", "/jobs/latest"): StubResponse(_job()),
            ("GET", "/jobs/job-1"): StubResponse(detail),
        },
    )

    result = runner.invoke(cli.cli, ["show", "latest"])

    assert result.exit_code == 0, result.output
    assert [path for _, path, _ in client.requests] == ["/jobs/latest", "/jobs/job-1"]
    assert "completed=1" in result.output
    assert "page-1-a.png" in result.output


def test_cancel_reports_outcome(monkeypatch):
    _install(
        monkeypatch,
        {("DELETE", "/jobs/job-1"): StubResponse({"job_id": "job-1", "cancelled": False, "status": "completed"})},
    )

    result = runner.invoke(cli.cli, ["cancel", "job-1"])

    assert result.exit_code == 0
    assert "already completed" in result.output


def test_download_writes_file(monkeypatch, tmp_path: Path):
    _install(monkeypatch, {("GET", "/jobs/job-1/document"): StubResponse(content=b"%PDF-1.4")})
    target = tmp_path / "out" / "job.pdf"

    result = runner.invoke(cli.cli, ["download", "job-1", "--kind", "document", "--out", str(target)])

    assert result.exit_code == 0, result.output
    assert target.read_bytes() == b"%PDF-1.4"


def test_download_rejects_unknown_kind(monkeypatch):
    _install(monkeypatch, {})

    result = runner.invoke(cli.cli, ["download", "job-1", "--kind", "tarball"])

    assert result.exit_code != 0


def test_stats_prints_queue(monkeypatch):
    stats = {
        "queue_depth": 3,
        "workers": 2,
        "busy_workers": 1,
        "active_sessions": 1,
        "jobs": {"job-1": {"dispatched": 4, "queued": 3, "in_flight": 1}},
    }
    _install(monkeypatch, {("GET", "/stats"): StubResponse(stats)})

    result = runner.invoke(cli.cli, ["stats"])

    assert result.exit_code == 0
    assert "queue=3 workers=2 busy=1 sessions=1" in result.output
    assert "job-1" in result.output
