"""Fair-share cross-job scheduler and bounded worker pool."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Deque, Dict, Iterable, Protocol, Sequence

from .automation import AutomationSession
from .processor import TaskOptions, TaskOutcome
from .sessions import BrowserSessionManager
from .settings import SchedulerSettings
from .store import JobRecord, JobStateError, JobStatus, Store, UrlStatus

LOGGER = logging.getLogger(__name__)


class TaskRunner(Protocol):
    """What the worker loop needs from the page processor."""

    async def capture(
        self,
        session: AutomationSession,
        *,
        job_id: str,
        url: str,
        task_index: int,
        options: TaskOptions,
    ) -> TaskOutcome: ...

    async def report(self, job_id: str, outcome: TaskOutcome) -> bool: ...


class Finalizer(Protocol):
    async def build_archive(self, job_id: str) -> object: ...

    async def build_document(self, job_id: str) -> object: ...


@dataclass(slots=True)
class QueueItem:
    """In-memory dispatch record for one URL task."""

    job_id: str
    url: str
    index: int
    sequence: int
    options: TaskOptions
    enqueued_at: float = field(default_factory=time.monotonic)
    attempts: int = 0


@dataclass(frozen=True, slots=True)
class JobQueueStats:
    dispatched: int
    queued: int
    in_flight: int


@dataclass(frozen=True, slots=True)
class SchedulerStats:
    queue_depth: int
    workers: int
    busy_workers: int
    active_sessions: int
    jobs: dict[str, JobQueueStats]


def new_job_id() -> str:
    """Millisecond timestamp, matching the directory names cleanup recognizes."""

    return str(int(time.time() * 1000))


class FairScheduler:
    """Single shared queue drained by a fixed pool of asyncio workers.

    Dispatch picks the job with the fewest dispatched tasks (earliest
    submitted job on ties) and takes that job's oldest queued item.
    ``dequeue_next`` never awaits, so selection is atomic across workers.
    """

    def __init__(
        self,
        *,
        store: Store,
        processor: TaskRunner,
        sessions: BrowserSessionManager,
        settings: SchedulerSettings,
        bundler: Finalizer | None = None,
    ) -> None:
        self._store = store
        self._processor = processor
        self._sessions = sessions
        self._settings = settings
        self._bundler = bundler
        self._queues: Dict[str, Deque[QueueItem]] = {}
        self._job_order: Dict[str, int] = {}
        self._dispatched: Dict[str, int] = {}
        self._in_flight: Dict[str, int] = {}
        self._tracked: set[tuple[str, int]] = set()
        self._sequence = itertools.count()
        self._job_counter = itertools.count()
        self._workers: Dict[int, asyncio.Task[None]] = {}
        self._current: Dict[int, QueueItem] = {}
        self._finalizing: set[str] = set()
        self._releases: Dict[str, asyncio.Task[bool]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._running = False

    # -- queue ----------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def worker_count(self) -> int:
        return self._settings.worker_count

    def enqueue(self, job_id: str, tasks: Iterable[tuple[int, str]], options: TaskOptions) -> int:
        """Queue ``(index, url)`` tasks for a job and start the pool if idle.

        Tasks already queued or in flight are skipped. Returns how many were added.
        """

        if job_id not in self._job_order:
            self._job_order[job_id] = next(self._job_counter)
        self._dispatched.setdefault(job_id, 0)
        added = 0
        for index, url in tasks:
            key = (job_id, index)
            if key in self._tracked:
                continue
            self._tracked.add(key)
            item = QueueItem(job_id=job_id, url=url, index=index, sequence=next(self._sequence), options=options)
            self._queues.setdefault(job_id, deque()).append(item)
            added += 1
        if added:
            LOGGER.info("Queued %d task(s) for job %s", added, job_id)
            self.start()
        return added

    def dequeue_next(self) -> QueueItem | None:
        best_job: str | None = None
        best_key: tuple[int, int] | None = None
        for job_id, queue in self._queues.items():
            if not queue:
                continue
            key = (self._dispatched.get(job_id, 0), self._job_order[job_id])
            if best_key is None or key < best_key:
                best_job, best_key = job_id, key
        if best_job is None:
            return None
        queue = self._queues[best_job]
        item = queue.popleft()
        if not queue:
            del self._queues[best_job]
        self._dispatched[best_job] = self._dispatched.get(best_job, 0) + 1
        self._in_flight[best_job] = self._in_flight.get(best_job, 0) + 1
        return item

    def queued_count(self, job_id: str | None = None) -> int:
        if job_id is not None:
            return len(self._queues.get(job_id, ()))
        return sum(len(queue) for queue in self._queues.values())

    def is_idle(self, job_id: str) -> bool:
        return not self._queues.get(job_id) and not self._in_flight.get(job_id)

    def _purge(self, job_id: str) -> int:
        queue = self._queues.pop(job_id, None)
        if not queue:
            return 0
        for item in queue:
            self._tracked.discard((job_id, item.index))
        return len(queue)

    def _task_done(self, item: QueueItem) -> None:
        self._tracked.discard((item.job_id, item.index))
        remaining = self._in_flight.get(item.job_id, 0) - 1
        if remaining > 0:
            self._in_flight[item.job_id] = remaining
        else:
            self._in_flight.pop(item.job_id, None)

    def _requeue_front(self, item: QueueItem) -> None:
        item.attempts += 1
        self._tracked.add((item.job_id, item.index))
        self._queues.setdefault(item.job_id, deque()).appendleft(item)
        self._dispatched[item.job_id] = max(0, self._dispatched.get(item.job_id, 0) - 1)

    def forget(self, job_id: str) -> None:
        """Drop every in-memory trace of a finished or deleted job."""

        self._purge(job_id)
        self._job_order.pop(job_id, None)
        self._dispatched.pop(job_id, None)
        self._sessions.forget(job_id)

    # -- pool -----------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for slot in range(self._settings.worker_count):
            self._spawn(slot)
        LOGGER.info("Worker pool started with %d worker(s)", self._settings.worker_count)

    async def stop(self) -> None:
        """Stop dispatching; workers finish their current task and exit."""

        if not self._running and not self._workers:
            return
        self._running = False
        workers = list(self._workers.values())
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        pending = [*self._releases.values(), *self._background]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._releases.clear()
        LOGGER.info("Worker pool stopped")

    def _spawn(self, slot: int) -> None:
        task = asyncio.create_task(self._worker(slot), name=f"pagesnap-worker-{slot}")
        task.add_done_callback(partial(self._on_worker_exit, slot))
        self._workers[slot] = task

    def _on_worker_exit(self, slot: int, task: asyncio.Task[None]) -> None:
        if self._workers.get(slot) is task:
            del self._workers[slot]
        item = self._current.pop(slot, None)
        if item is not None:
            self._task_done(item)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        LOGGER.error("Worker %d crashed", slot, exc_info=exc)
        if item is not None:
            self._in_background(self._recover(item))
        if self._running:
            LOGGER.warning("Relaunching worker %d", slot)
            self._spawn(slot)

    def _in_background(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _worker(self, slot: int) -> None:
        while self._running:
            item = self.dequeue_next()
            if item is None:
                await asyncio.sleep(self._settings.idle_poll_seconds)
                continue
            self._current[slot] = item
            await self._run_item(item)
            self._current.pop(slot, None)
            self._task_done(item)
            await self._after_task(item.job_id)

    async def _run_item(self, item: QueueItem) -> None:
        job = await asyncio.to_thread(self._store.fetch_job, item.job_id)
        if job is None or job.status != JobStatus.RUNNING.value:
            LOGGER.debug("Dropping %s; job %s is no longer running", item.url, item.job_id)
            return
        try:
            session = await self._sessions.acquire_session(item.job_id)
            outcome = await self._processor.capture(
                session,
                job_id=item.job_id,
                url=item.url,
                task_index=item.index,
                options=item.options,
            )
        except Exception as exc:
            LOGGER.warning("Task %s for job %s failed: %s", item.url, item.job_id, exc)
            outcome = TaskOutcome(url=item.url, task_index=item.index, status=UrlStatus.ERROR, error=str(exc))
        await self._processor.report(item.job_id, outcome)

    async def _recover(self, item: QueueItem) -> None:
        """Requeue (once) or fail the task a crashed worker was holding."""

        try:
            job = await asyncio.to_thread(self._store.fetch_job, item.job_id)
            if job is None or job.status != JobStatus.RUNNING.value:
                return
            pending = await asyncio.to_thread(self._store.list_pending_tasks, item.job_id)
            if (item.index, item.url) in pending:
                if item.attempts < self._settings.fault_requeue_limit and self._running:
                    LOGGER.info("Requeueing %s for job %s after worker fault", item.url, item.job_id)
                    self._requeue_front(item)
                    return
                await asyncio.to_thread(
                    self._store.update_url_status,
                    job_id=item.job_id,
                    url=item.url,
                    status=UrlStatus.ERROR,
                )
            await self._after_task(item.job_id)
        except Exception:
            LOGGER.exception("Recovering task %s for job %s failed", item.url, item.job_id)

    # -- job lifecycle ----------------------------------------------------------

    async def _after_task(self, job_id: str) -> None:
        if not self.is_idle(job_id) or job_id in self._finalizing:
            return
        self._finalizing.add(job_id)
        try:
            await self._complete_if_drained(job_id)
        finally:
            self._finalizing.discard(job_id)
        self._schedule_release(job_id)

    async def _complete_if_drained(self, job_id: str) -> None:
        if await asyncio.to_thread(self._store.count_pending, job_id):
            return
        if await asyncio.to_thread(self._store.mark_completed, job_id):
            LOGGER.info("Job %s completed", job_id)
            await self._finalize(job_id)

    async def _finalize(self, job_id: str) -> None:
        if self._bundler is None:
            return
        if self._settings.auto_archive:
            try:
                await self._bundler.build_archive(job_id)
            except Exception:
                LOGGER.exception("Automatic archive for job %s failed", job_id)
        if self._settings.auto_document:
            try:
                await self._bundler.build_document(job_id)
            except Exception:
                LOGGER.exception("Automatic document for job %s failed", job_id)

    def _schedule_release(self, job_id: str) -> None:
        existing = self._releases.get(job_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self._release_and_prune(job_id))
        self._releases[job_id] = task
        task.add_done_callback(partial(self._release_finished, job_id))

    async def _release_and_prune(self, job_id: str) -> bool:
        """Close an idle job's session; forget the job once it is terminal."""

        released = False
        if self._sessions.has_session(job_id):
            released = await self._sessions.release_on_drain(job_id, partial(self.is_idle, job_id))
        if not self.is_idle(job_id) or self._sessions.has_session(job_id):
            return released
        job = await asyncio.to_thread(self._store.fetch_job, job_id)
        if (job is None or job.status != JobStatus.RUNNING.value) and self.is_idle(job_id):
            self.forget(job_id)
            LOGGER.debug("Forgot finished job %s", job_id)
        return released

    def _release_finished(self, job_id: str, task: asyncio.Task[bool]) -> None:
        if self._releases.get(job_id) is task:
            del self._releases[job_id]
        if not task.cancelled() and task.exception() is not None:
            LOGGER.warning("Releasing session for job %s failed: %s", job_id, task.exception())

    async def submit(
        self,
        urls: Sequence[str],
        *,
        job_id: str | None = None,
        sitemap_url: str | None = None,
        options: TaskOptions | None = None,
    ) -> JobRecord:
        """Create a job (or resume a running one) and queue its pending tasks."""

        options = options or TaskOptions()
        if job_id is None:
            job_id = await asyncio.to_thread(self._unused_job_id)
        record = await asyncio.to_thread(self._store.fetch_job, job_id)
        if record is None:
            record = await asyncio.to_thread(
                self._store.create_job,
                job_id=job_id,
                urls=urls,
                sitemap_url=sitemap_url,
                highlight_links=options.highlight_links,
                capture_width=options.capture_width,
            )
            LOGGER.info("Created job %s with %d URL(s)", job_id, record.total_urls)
        elif record.status != JobStatus.RUNNING.value:
            raise JobStateError(f"Job {job_id} is {record.status}")
        else:
            options = _options_for(record)
            LOGGER.info("Resuming job %s", job_id)
        await self._enqueue_pending(job_id, options)
        return await asyncio.to_thread(self._store.get_job, job_id)

    async def _enqueue_pending(self, job_id: str, options: TaskOptions) -> int:
        pending = await asyncio.to_thread(self._store.list_pending_tasks, job_id)
        added = self.enqueue(job_id, pending, options)
        if not pending:
            await self._after_task(job_id)
        return added

    def _unused_job_id(self) -> str:
        candidate = new_job_id()
        while self._store.fetch_job(candidate) is not None:
            candidate = str(int(candidate) + 1)
        return candidate

    async def resume_incomplete(self) -> list[str]:
        """Re-queue pending tasks of every job still marked running."""

        resumed: list[str] = []
        for record in await asyncio.to_thread(self._store.list_running_jobs):
            added = await self._enqueue_pending(record.id, _options_for(record))
            if added:
                resumed.append(record.id)
                LOGGER.info("Resumed job %s with %d pending task(s)", record.id, added)
        return resumed

    async def cancel(self, job_id: str) -> bool:
        """Mark a job cancelled and stop dispatching its tasks.

        In-flight tasks finish; the job's session is released once they do.
        """

        changed = await asyncio.to_thread(self._store.mark_cancelled, job_id)
        dropped = self._purge(job_id)
        if changed:
            LOGGER.info("Cancelled job %s (%d queued task(s) dropped)", job_id, dropped)
        self._schedule_release(job_id)
        return changed

    def get_stats(self) -> SchedulerStats:
        job_ids = set(self._dispatched) | set(self._queues) | set(self._in_flight)
        jobs = {
            job_id: JobQueueStats(
                dispatched=self._dispatched.get(job_id, 0),
                queued=len(self._queues.get(job_id, ())),
                in_flight=self._in_flight.get(job_id, 0),
            )
            for job_id in sorted(job_ids, key=lambda job: self._job_order.get(job, -1))
        }
        return SchedulerStats(
            queue_depth=self.queued_count(),
            workers=len(self._workers),
            busy_workers=len(self._current),
            active_sessions=self._sessions.active_sessions,
            jobs=jobs,
        )


def _options_for(record: JobRecord) -> TaskOptions:
    return TaskOptions(highlight_links=record.highlight_links, capture_width=record.capture_width)
