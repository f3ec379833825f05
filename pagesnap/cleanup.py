"""Retention sweep for finished jobs and orphaned output directories."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from .store import Store, utcnow

LOGGER = logging.getLogger(__name__)

# Directory names produced by time-derived job ids (epoch milliseconds).
_GENERATED_JOB_DIR = re.compile(r"^\d{13}$")


@dataclass
class CleanupReport:
    deleted_jobs: List[str] = field(default_factory=list)
    orphan_dirs: List[str] = field(default_factory=list)


def cleanup_expired_jobs(store: Store, *, older_than: timedelta) -> CleanupReport:
    """Delete jobs finished before ``now - older_than`` plus orphaned job directories."""

    report = CleanupReport()
    cutoff = utcnow() - older_than
    for record in store.list_expired_jobs(cutoff):
        if store.delete_job(record.id):
            report.deleted_jobs.append(record.id)

    root = store.config.output_root
    if root.is_dir():
        for entry in sorted(root.iterdir()):
            if not entry.is_dir() or not _GENERATED_JOB_DIR.match(entry.name):
                continue
            if store.fetch_job(entry.name) is None:
                shutil.rmtree(entry, ignore_errors=True)
                report.orphan_dirs.append(entry.name)

    if report.deleted_jobs or report.orphan_dirs:
        LOGGER.info(
            "Cleanup removed %d expired job(s) and %d orphan dir(s)",
            len(report.deleted_jobs),
            len(report.orphan_dirs),
        )
    return report


async def run_cleanup_loop(
    store: Store,
    *,
    older_than: timedelta,
    interval_seconds: float,
    on_deleted=None,
) -> None:
    """Sweep immediately, then every ``interval_seconds`` until cancelled."""

    while True:
        try:
            report = await asyncio.to_thread(cleanup_expired_jobs, store, older_than=older_than)
            if on_deleted is not None:
                for job_id in report.deleted_jobs:
                    on_deleted(job_id)
        except Exception as exc:  # pragma: no cover
            LOGGER.exception("Cleanup sweep failed: %s", exc)
        await asyncio.sleep(interval_seconds)
