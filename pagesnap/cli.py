#!/usr/bin/env python3
"""pagesnap CLI for driving the crawler API."""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import ContextManager, Iterator, List, Optional

import httpx
import typer
from decouple import Config as DecoupleConfig, RepositoryEnv
from rich.console import Console
from rich.table import Table

console = Console()
cli = typer.Typer(help="Interact with the pagesnap API")

_DOWNLOAD_KINDS = {"archive", "document"}


@dataclass
class APISettings:
    base_url: str
    api_timeout: float


def _load_env_settings() -> APISettings:
    env_path = Path(".env")
    if env_path.exists():
        config = DecoupleConfig(RepositoryEnv(str(env_path)))
        base_url = config("PAGESNAP_API_BASE_URL", default="http://localhost:8000")
        timeout = config("PAGESNAP_API_TIMEOUT", cast=float, default=60.0)
        return APISettings(base_url=base_url, api_timeout=timeout)
    return APISettings(base_url="http://localhost:8000", api_timeout=60.0)


def _resolve_settings(override_base: Optional[str]) -> APISettings:
    settings = _load_env_settings()
    if override_base:
        settings.base_url = override_base
    return settings


def _client(settings: APISettings) -> httpx.Client:
    return httpx.Client(
        base_url=settings.base_url,
        timeout=httpx.Timeout(connect=10.0, read=settings.api_timeout, write=30.0, pool=10.0),
    )


def _client_ctx(settings: APISettings) -> ContextManager[httpx.Client]:
    @contextmanager
    def _ctx() -> Iterator[httpx.Client]:
        client = _client(settings)
        try:
            yield client
        finally:
            client.close()

    return _ctx()


def _fail(response) -> None:  # noqa: ANN001
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    console.print(f"[red]HTTP {response.status_code}[/]: {detail}")
    raise typer.Exit(1)


def _jobs_table(jobs: List[dict]) -> Table:
    table = Table("Job", "Status", "Done", "Total", "Created", "Archive")
    for job in jobs:
        table.add_row(
            job["id"],
            job["status"],
            str(job["completed_urls"]),
            str(job["total_urls"]),
            str(job.get("created_at", "")),
            "yes" if job.get("has_archive") else "-",
        )
    return table


@cli.command()
def submit(
    urls: List[str] = typer.Argument(None, help="URLs to capture."),
    sitemap: Optional[str] = typer.Option(None, "--sitemap", help="Sitemap URL to expand."),
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Explicit job id (resumes if running)."),
    highlight: bool = typer.Option(True, "--highlight/--no-highlight", help="Number outbound links."),
    width: Optional[int] = typer.Option(None, "--width", help="Viewport width override."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """Submit a new crawl job."""

    if not urls and not sitemap:
        raise typer.BadParameter("Provide URLs or --sitemap")
    payload = {
        "urls": list(urls or []),
        "sitemap_url": sitemap,
        "job_id": job_id,
        "highlight_links": highlight,
        "capture_width": width,
    }
    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.post("/jobs", json=payload)
    if response.status_code >= 400:
        _fail(response)
    job = response.json()
    console.print(f"[green]Queued[/] job [bold]{job['id']}[/] with {job['total_urls']} URL(s)")


@cli.command("jobs")
def list_jobs(
    limit: int = typer.Option(20, "--limit", help="Maximum jobs to list."),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """List recent jobs."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.get(f"/jobs?limit={limit}")
    if response.status_code >= 400:
        _fail(response)
    jobs = response.json()
    if as_json:
        console.print_json(json.dumps(jobs))
        return
    if not jobs:
        console.print("[yellow]No jobs yet.[/]")
        return
    console.print(_jobs_table(jobs))


@cli.command()
def show(
    job_id: str = typer.Argument(..., help="Job id, or 'latest'."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """Show one job and its URL tasks."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        if job_id == "latest":
            latest = client.get("/jobs/latest")
            if latest.status_code >= 400:
                _fail(latest)
            job_id = latest.json()["id"]
        response = client.get(f"/jobs/{job_id}")
    if response.status_code >= 400:
        _fail(response)
    job = response.json()
    console.print(f"[bold]{job['id']}[/] {job['status']} ({job['completed_urls']}/{job['total_urls']})")
    counts = job.get("counts", {})
    if counts:
        console.print(", ".join(f"{status}={count}" for status, count in counts.items()))
    table = Table("#", "URL", "Status", "Screenshot")
    for task in job.get("urls", []):
        table.add_row(str(task["position"] + 1), task["url"], task["status"], task.get("screenshot") or "-")
    console.print(table)


@cli.command()
def cancel(
    job_id: str = typer.Argument(..., help="Job id to cancel."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """Cancel a running job."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.delete(f"/jobs/{job_id}")
    if response.status_code >= 400:
        _fail(response)
    body = response.json()
    if body["cancelled"]:
        console.print(f"[green]Cancelled[/] job {job_id}")
    else:
        console.print(f"[yellow]Job {job_id} already {body['status']}[/]")


@cli.command()
def download(
    job_id: str = typer.Argument(..., help="Job id."),
    kind: str = typer.Option("archive", "--kind", help="archive or document."),
    out: Optional[Path] = typer.Option(None, "--out", help="Destination file."),
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """Download a job's archive or PDF document."""

    if kind not in _DOWNLOAD_KINDS:
        raise typer.BadParameter("kind must be 'archive' or 'document'", param_hint="--kind")
    suffix = ".zip" if kind == "archive" else ".pdf"
    target = out or Path(f"screenshots-{job_id}{suffix}")
    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.get(f"/jobs/{job_id}/{kind}")
    if response.status_code >= 400:
        _fail(response)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(response.content)
    console.print(f"[green]Saved[/] {kind} to {target} ({len(response.content)} bytes)")


@cli.command()
def stats(
    api_base: Optional[str] = typer.Option(None, "--api-base", help="Override API base URL."),
) -> None:
    """Show scheduler queue and worker stats."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings) as client:
        response = client.get("/stats")
    if response.status_code >= 400:
        _fail(response)
    data = response.json()
    console.print(
        f"queue={data['queue_depth']} workers={data['workers']} busy={data['busy_workers']} "
        f"sessions={data['active_sessions']}"
    )
    table = Table("Job", "Dispatched", "Queued", "In flight")
    for job_id, job in data.get("jobs", {}).items():
        table.add_row(job_id, str(job["dispatched"]), str(job["queued"]), str(job["in_flight"]))
    console.print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
