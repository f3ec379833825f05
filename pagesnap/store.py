"""Persistence helpers for crawl jobs, their URL tasks, and on-disk layout."""

from __future__ import annotations

import re
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from sqlalchemy import delete, event, update
from sqlmodel import Field, Session, SQLModel, create_engine, func, select

from .settings import StorageSettings, get_settings

__all__ = [
    "JobStatus",
    "UrlStatus",
    "JobRecord",
    "UrlRecord",
    "JobPaths",
    "JobStateError",
    "Store",
    "build_store",
    "utcnow",
]

_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


class JobStatus(str, Enum):
    """Lifecycle states for a crawl job. Terminal states never change."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class UrlStatus(str, Enum):
    """Lifecycle states for one URL task."""

    TO_DO = "to_do"
    COMPLETED = "completed"
    ERROR = "error"


class JobStateError(ValueError):
    """Raised when an operation is not allowed in the job's current state."""


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp for every stored date."""

    return datetime.now(timezone.utc)


class JobRecord(SQLModel, table=True):
    """One crawl request spanning one or more URLs."""

    __tablename__ = "jobs"

    id: str = Field(primary_key=True)
    sitemap_url: str | None = None
    total_urls: int = 0
    completed_urls: int = 0
    status: str = Field(default=JobStatus.RUNNING.value, index=True)
    highlight_links: bool = True
    capture_width: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    archive_path: str | None = None
    archive_size: int | None = None
    document_path: str | None = None


class UrlRecord(SQLModel, table=True):
    """A single page to capture, owned by exactly one job."""

    __tablename__ = "urls"

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="jobs.id", index=True)
    position: int = Field(description="0-based index of the URL within its job")
    url: str
    status: str = Field(default=UrlStatus.TO_DO.value, index=True)
    image_path: str | None = None
    processed_at: datetime | None = None


@dataclass(frozen=True)
class JobPaths:
    """Filesystem locations for a specific job."""

    root: Path
    screenshots_dir: Path
    slices_dir: Path
    archive_path: Path
    document_path: Path

    @classmethod
    def for_job(cls, output_root: Path, job_id: str) -> JobPaths:
        root = output_root / job_id
        return cls(
            root=root,
            screenshots_dir=root / "screenshots",
            slices_dir=root / "temp-slices",
            archive_path=root / f"screenshots-{job_id}.zip",
            document_path=root / f"screenshots-{job_id}.pdf",
        )

    def ensure_directories(self) -> None:
        self.screenshots_dir.mkdir(parents=True, exist_ok=True)


class Store:
    """Facade around SQLite + filesystem persistence.

    Every method is synchronous; async callers hop through ``asyncio.to_thread``.
    Status mutations are single conditional UPDATE statements so concurrent
    workers can never move a row out of a terminal state.
    """

    def __init__(self, config: StorageSettings | None = None) -> None:
        self.config = config or get_settings().storage
        self.config.output_root.mkdir(parents=True, exist_ok=True)
        if self.config.db_path.parent != Path(""):
            self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = _create_engine(self.config.db_path)
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def paths_for(self, job_id: str) -> JobPaths:
        return JobPaths.for_job(self.config.output_root, job_id)

    # -- jobs -----------------------------------------------------------------

    def create_job(
        self,
        *,
        job_id: str,
        urls: Sequence[str],
        sitemap_url: str | None = None,
        highlight_links: bool = True,
        capture_width: int | None = None,
    ) -> JobRecord:
        """Persist a running job and one ``to_do`` task per distinct URL."""

        if not _JOB_ID_PATTERN.match(job_id):
            raise ValueError(f"Invalid job id {job_id!r}")
        unique = _dedupe(urls)
        if not unique:
            raise ValueError("A job needs at least one URL")
        record = JobRecord(
            id=job_id,
            sitemap_url=sitemap_url,
            total_urls=len(unique),
            highlight_links=highlight_links,
            capture_width=capture_width,
        )
        with self.session() as session:
            if session.get(JobRecord, job_id):
                raise ValueError(f"Job {job_id} already exists")
            session.add(record)
            session.add_all(
                UrlRecord(job_id=job_id, position=position, url=url)
                for position, url in enumerate(unique)
            )
            session.commit()
            session.refresh(record)
        self.paths_for(job_id).ensure_directories()
        return record

    def get_job(self, job_id: str) -> JobRecord:
        with self.session() as session:
            record = session.get(JobRecord, job_id)
            if not record:
                raise KeyError(f"Job {job_id} not found")
            return record

    def fetch_job(self, job_id: str) -> JobRecord | None:
        with self.session() as session:
            return session.get(JobRecord, job_id)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int | None = None) -> list[JobRecord]:
        statement = select(JobRecord).order_by(JobRecord.created_at.desc(), JobRecord.id.desc())
        if status is not None:
            statement = statement.where(JobRecord.status == status.value)
        if limit is not None:
            statement = statement.limit(limit)
        with self.session() as session:
            return list(session.exec(statement).all())

    def latest_job(self) -> JobRecord | None:
        """Most recently created job that was not cancelled."""

        statement = (
            select(JobRecord)
            .where(JobRecord.status != JobStatus.CANCELLED.value)
            .order_by(JobRecord.created_at.desc(), JobRecord.id.desc())
            .limit(1)
        )
        with self.session() as session:
            return session.exec(statement).first()

    def list_running_jobs(self) -> list[JobRecord]:
        return self.list_jobs(status=JobStatus.RUNNING)

    def mark_completed(self, job_id: str) -> bool:
        """Move a running job to ``completed``. Returns False if it was already terminal."""

        return self._finish(job_id, JobStatus.COMPLETED)

    def mark_cancelled(self, job_id: str) -> bool:
        """Move a running job to ``cancelled``. Returns False if it was already terminal."""

        return self._finish(job_id, JobStatus.CANCELLED)

    def _finish(self, job_id: str, status: JobStatus) -> bool:
        statement = (
            update(JobRecord)
            .where(JobRecord.id == job_id, JobRecord.status == JobStatus.RUNNING.value)
            .values(status=status.value, completed_at=utcnow())
        )
        with self.session() as session:
            result = session.connection().execute(statement)
            session.commit()
            if result.rowcount:
                return True
            if not session.get(JobRecord, job_id):
                raise KeyError(f"Job {job_id} not found")
            return False

    def set_archive(self, job_id: str, *, path: Path, size: int) -> None:
        with self.session() as session:
            record = session.get(JobRecord, job_id)
            if not record:
                raise KeyError(f"Job {job_id} not found")
            record.archive_path = str(path)
            record.archive_size = size
            session.add(record)
            session.commit()

    def set_document(self, job_id: str, *, path: Path) -> None:
        with self.session() as session:
            record = session.get(JobRecord, job_id)
            if not record:
                raise KeyError(f"Job {job_id} not found")
            record.document_path = str(path)
            session.add(record)
            session.commit()

    def list_expired_jobs(self, cutoff: datetime) -> list[JobRecord]:
        """Terminal jobs whose completion time is older than ``cutoff``."""

        statement = select(JobRecord).where(
            JobRecord.completed_at.is_not(None),
            JobRecord.completed_at < cutoff,
        )
        with self.session() as session:
            return list(session.exec(statement).all())

    def delete_job(self, job_id: str, *, remove_files: bool = True) -> bool:
        """Delete a job, its URL tasks and (optionally) its output directory."""

        with self.session() as session:
            record = session.get(JobRecord, job_id)
            if not record:
                return False
            connection = session.connection()
            connection.execute(delete(UrlRecord).where(UrlRecord.job_id == job_id))
            connection.execute(delete(JobRecord).where(JobRecord.id == job_id))
            session.commit()
        if remove_files:
            shutil.rmtree(self.paths_for(job_id).root, ignore_errors=True)
        return True

    # -- url tasks ------------------------------------------------------------

    def list_urls(self, job_id: str) -> list[UrlRecord]:
        statement = select(UrlRecord).where(UrlRecord.job_id == job_id).order_by(UrlRecord.position)
        with self.session() as session:
            return list(session.exec(statement).all())

    def list_pending_tasks(self, job_id: str) -> list[tuple[int, str]]:
        """``(position, url)`` pairs still ``to_do``, in submission order."""

        statement = (
            select(UrlRecord.position, UrlRecord.url)
            .where(UrlRecord.job_id == job_id, UrlRecord.status == UrlStatus.TO_DO.value)
            .order_by(UrlRecord.position)
        )
        with self.session() as session:
            return [(position, url) for position, url in session.exec(statement).all()]

    def list_pending_urls(self, job_id: str) -> list[str]:
        return [url for _, url in self.list_pending_tasks(job_id)]

    def count_pending(self, job_id: str) -> int:
        statement = select(func.count()).select_from(UrlRecord).where(
            UrlRecord.job_id == job_id, UrlRecord.status == UrlStatus.TO_DO.value
        )
        with self.session() as session:
            return int(session.exec(statement).one())

    def count_by_status(self, job_id: str) -> dict[str, int]:
        statement = (
            select(UrlRecord.status, func.count())
            .where(UrlRecord.job_id == job_id)
            .group_by(UrlRecord.status)
        )
        counts = {status.value: 0 for status in UrlStatus}
        with self.session() as session:
            for status, count in session.exec(statement).all():
                counts[status] = int(count)
        return counts

    def update_url_status(
        self,
        *,
        job_id: str,
        url: str,
        status: UrlStatus,
        image_path: str | None = None,
    ) -> bool:
        """Record a terminal status for a ``to_do`` task.

        The task update and the job's completed counter move in one
        transaction. Returns False when the task was already terminal.
        """

        if status is UrlStatus.TO_DO:
            raise ValueError("to_do is not a terminal status")
        statement = (
            update(UrlRecord)
            .where(
                UrlRecord.job_id == job_id,
                UrlRecord.url == url,
                UrlRecord.status == UrlStatus.TO_DO.value,
            )
            .values(
                status=status.value,
                image_path=image_path if status is UrlStatus.COMPLETED else None,
                processed_at=utcnow(),
            )
        )
        with self.session() as session:
            connection = session.connection()
            result = connection.execute(statement)
            changed = bool(result.rowcount)
            if changed and status is UrlStatus.COMPLETED:
                connection.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id)
                    .values(completed_urls=JobRecord.completed_urls + 1)
                )
            session.commit()
            if changed:
                return True
            exists = session.exec(
                select(UrlRecord.id).where(UrlRecord.job_id == job_id, UrlRecord.url == url)
            ).first()
            if exists is None:
                raise KeyError(f"URL {url} not found in job {job_id}")
            return False

    def url_for_image(self, job_id: str, filename: str) -> str | None:
        """Look up the source URL of a captured image by its file name."""

        statement = select(UrlRecord.url, UrlRecord.image_path).where(
            UrlRecord.job_id == job_id, UrlRecord.image_path.is_not(None)
        )
        with self.session() as session:
            for url, image_path in session.exec(statement).all():
                if Path(image_path).name == filename:
                    return url
        return None

    def completed_images(self, job_id: str) -> list[tuple[int, str, Path]]:
        """``(position, url, path)`` for completed tasks, in submission order."""

        statement = (
            select(UrlRecord.position, UrlRecord.url, UrlRecord.image_path)
            .where(UrlRecord.job_id == job_id, UrlRecord.status == UrlStatus.COMPLETED.value)
            .order_by(UrlRecord.position)
        )
        with self.session() as session:
            return [
                (position, url, Path(image_path))
                for position, url, image_path in session.exec(statement).all()
                if image_path
            ]

    def resolve_screenshot(self, job_id: str, filename: str) -> Path:
        """Return a captured image path, refusing anything outside the job's screenshot dir."""

        self.get_job(job_id)
        screenshots = self.paths_for(job_id).screenshots_dir.resolve()
        target = (screenshots / filename).resolve()
        try:
            target.relative_to(screenshots)
        except ValueError:
            raise FileNotFoundError(filename)
        if not target.is_file():
            raise FileNotFoundError(target)
        return target


def build_store(config: StorageSettings | None = None) -> Store:
    """Convenience wrapper used by FastAPI startup hooks."""

    return Store(config=config)


def _dedupe(urls: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for url in urls:
        cleaned = url.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def _create_engine(db_path: Path):
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[override]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine
