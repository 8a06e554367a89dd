"""Persistent background upload queue.

Single-flight processor over the durable JobStore:
- jobs survive restarts (KeyValueStore persistence)
- one drain at a time, oldest job first
- retries with a fixed backoff ladder, then parks the job for manual retry
- cancel support for records the user deleted
- resumes on host foreground transitions and on its own wake-up timer

Everything runs on one asyncio event loop. Re-entrancy is prevented with a
plain flag, not a lock, because only one logical thread ever touches the
queue. Background failures are logged and recorded on the job; nothing
raises across the public boundary.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from wardrobe_sync.core.logging import get_logger
from wardrobe_sync.jobs import telemetry
from wardrobe_sync.jobs.dispatcher import IdleCallback, UploadDispatcher, UploadFn
from wardrobe_sync.jobs.job_store import JobStore
from wardrobe_sync.jobs.models import QueueStatus, UploadJob, UploadKind, UploadRequest
from wardrobe_sync.lifecycle import HostLifecycle
from wardrobe_sync.storage.base import FileSystem

logger = get_logger(__name__)

MAX_ATTEMPTS = 3
RETRY_DELAYS_MS = (5_000, 30_000, 120_000)
IDLE_DEBOUNCE_MS = 100
MIN_WAKEUP_DELAY_MS = 1_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def backoff_delay_ms(attempts: int, delays: Sequence[int] = RETRY_DELAYS_MS) -> int:
    """Delay before the next try after ``attempts`` failures (attempts >= 1)."""
    return delays[min(max(attempts, 1) - 1, len(delays) - 1)]


class UploadQueue(UploadDispatcher):
    """Drains upload jobs one at a time with backoff, retry and cancel."""

    def __init__(
        self,
        store: JobStore,
        fs: FileSystem,
        lifecycle: Optional[HostLifecycle] = None,
        clock: Optional[Callable[[], int]] = None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delays_ms: Sequence[int] = RETRY_DELAYS_MS,
        idle_debounce_ms: int = IDLE_DEBOUNCE_MS,
        min_wakeup_delay_ms: int = MIN_WAKEUP_DELAY_MS,
    ):
        if not retry_delays_ms:
            raise ValueError("retry_delays_ms must not be empty")
        self._store = store
        self._fs = fs
        self._lifecycle = lifecycle
        self._clock = clock or _now_ms
        self._max_attempts = max_attempts
        self._retry_delays_ms = tuple(retry_delays_ms)
        self._idle_debounce_ms = idle_debounce_ms
        self._min_wakeup_delay_ms = min_wakeup_delay_ms

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._upload_fn: Optional[UploadFn] = None
        self._initialized = False
        self._closing = False
        self._processing = False
        self._cancelled: Set[str] = set()
        # Skip notices already logged this process; keeps repeated drains quiet
        self._logged_skips: Set[str] = set()
        self._idle_listeners: List[Tuple[Optional[UploadKind], IdleCallback]] = []
        self._had_jobs: Dict[UploadKind, bool] = {kind: False for kind in UploadKind}
        self._idle_handles: Dict[UploadKind, asyncio.TimerHandle] = {}
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._next_wakeup_at: Optional[int] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe_lifecycle: Optional[Callable[[], None]] = None

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def next_wakeup_at(self) -> Optional[int]:
        """Epoch ms at which the backoff timer will kick a drain, if armed."""
        return self._next_wakeup_at

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, upload_fn: UploadFn) -> None:
        """Register the upload function, hook foreground events, kick a drain.

        Safe to call again: later calls only swap the function and drain.
        """
        if self._initialized:
            logger.info("Upload queue already initialized, refreshing upload function")
            self._upload_fn = upload_fn
            self._spawn(self.drain())
            return

        self._initialized = True
        self._closing = False
        self._upload_fn = upload_fn
        await self._load()
        logger.info("Upload queue initialized", pending=len(self._store))

        if self._lifecycle is not None:
            self._unsubscribe_lifecycle = self._lifecycle.on_foreground(self._on_foreground)

        self._spawn(self.drain())

    async def close(self) -> None:
        """Detach from the host, wait for running drains, then disarm every timer.

        Once closing, no new drain, wake-up timer or idle notice is started.
        """
        self._closing = True
        if self._unsubscribe_lifecycle is not None:
            self._unsubscribe_lifecycle()
            self._unsubscribe_lifecycle = None
        await self.join()
        self._clear_retry_timer()
        for handle in self._idle_handles.values():
            handle.cancel()
        self._idle_handles.clear()
        self._initialized = False

    async def join(self) -> None:
        """Wait for every detached drain started so far (and any they start)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def kick(self) -> None:
        """Start a detached drain; its errors are logged, never raised."""
        self._spawn(self.drain())

    def _on_foreground(self) -> None:
        if self._upload_fn is not None:
            logger.info("App became active, resuming upload queue")
            self._spawn(self.drain())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def enqueue(self, request: UploadRequest) -> None:
        """Queue an upload. An existing job with the same id is replaced."""
        await self._load()
        logger.info("Enqueueing upload", kind=request.kind.value, job_id=request.id)

        self._store.remove(request.id)
        self._cancelled.discard(request.id)
        self._logged_skips.discard(request.id)
        self._logged_skips.discard(self._failed_key(request.id))

        job = UploadJob(
            **request.model_dump(include=set(UploadRequest.model_fields)),
            attempts=0,
            created_at=self._clock(),
            next_eligible_at=None,
        )
        self._store.append(job)
        self._had_jobs[job.kind] = True
        await self._store.persist()
        logger.info("Upload queue size", pending=len(self._store))

        telemetry.log_upload_event(telemetry.UPLOAD_ENQUEUED, job.id, kind=job.kind.value)

        # Queue changed; the next drain reconsiders everything
        self._clear_retry_timer()

    async def cancel(self, job_id: str) -> None:
        """Drop any queued upload for ``job_id`` (the owning record was deleted).

        An upload already in flight is not interrupted; its outcome is discarded.
        """
        await self._load()
        logger.info("Cancelling upload", job_id=job_id)
        self._cancelled.add(job_id)
        self._store.remove(job_id)
        await self._store.persist()

    async def retry(self, job_id: str) -> bool:
        """Re-arm a job that exhausted its attempts and kick a drain."""
        await self._load()
        job = self._store.find(job_id)
        if job is None:
            logger.info("No job found for retry", job_id=job_id)
            return False
        if job.attempts < self._max_attempts:
            logger.info("Job not failed, skipping retry", job_id=job_id, attempts=job.attempts)
            return False

        telemetry.log_upload_event(
            telemetry.UPLOAD_RETRY_MANUAL, job_id,
            kind=job.kind.value, previous_attempts=job.attempts,
        )
        job.attempts = 0
        job.next_eligible_at = None
        job.last_error = None
        self._logged_skips.discard(job_id)
        self._logged_skips.discard(self._failed_key(job_id))

        await self._store.persist()
        self._clear_retry_timer()
        if self._upload_fn is not None:
            self._spawn(self.drain())
        return True

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def drain(self, upload_fn: Optional[UploadFn] = None) -> None:
        """Run one pass over the queue, oldest job first.

        Jobs enqueued while the pass runs wait for the next pass.
        """
        await self._load()
        upload_fn = upload_fn or self._upload_fn
        if upload_fn is None:
            logger.warning("No upload function registered, skipping drain")
            return
        if self._processing:
            logger.debug("Upload queue already processing, skipping")
            return
        if not self._store.jobs:
            logger.debug("Upload queue is empty, nothing to process")
            self._emit_idle_transitions()
            return

        self._processing = True
        logger.info("Starting upload queue processing", pending=len(self._store))
        try:
            self._store.jobs.sort(key=lambda j: j.created_at)
            for job in list(self._store.jobs):
                await self._process_one(job, upload_fn)
        except Exception:
            logger.exception("Upload queue processing aborted")
        finally:
            self._processing = False
            self._cancelled.clear()
            logger.info("Upload queue processing complete", remaining=len(self._store))
            self._emit_idle_transitions()
            self._schedule_retry_timer()

    async def _process_one(self, job: UploadJob, upload_fn: UploadFn) -> None:
        job_id = job.id

        # Removed or replaced by a newer enqueue since the pass started
        if self._store.find(job_id) is not job:
            return

        if job_id in self._cancelled:
            self._cancelled.discard(job_id)
            self._remove_exact(job)
            await self._store.persist()
            return

        if job.attempts >= self._max_attempts:
            self._log_exhausted_once(job)
            return

        now = self._clock()
        if job.next_eligible_at is not None and job.next_eligible_at > now:
            if job_id not in self._logged_skips:
                logger.info(
                    "Job pending retry",
                    job_id=job_id,
                    kind=job.kind.value,
                    attempts=job.attempts,
                    retry_in_s=round((job.next_eligible_at - now) / 1000),
                )
                self._logged_skips.add(job_id)
            return

        self._logged_skips.discard(job_id)

        try:
            exists = await self._fs.exists(job.local_path)
        except Exception as e:
            logger.error("Could not check local file for upload", job_id=job_id, error=str(e))
            return
        if not exists:
            logger.warning(
                "INTEGRITY: local file missing for queued job",
                job_id=job_id,
                kind=job.kind.value,
                local_path=job.local_path,
                detail="File was deleted while the job was queued, possible sweep race",
            )
            self._remove_exact(job)
            await self._store.persist()
            return

        try:
            logger.info("Processing upload", job_id=job_id, kind=job.kind.value, attempt=job.attempts + 1)
            await upload_fn(job)
        except Exception as e:
            self._record_failure(job, e)
            await self._store.persist()
            return

        if self._remove_exact(job):
            logger.info("Upload successful", job_id=job_id)
            await self._store.persist()
        else:
            logger.info("Upload finished for a job that was cancelled or replaced", job_id=job_id)

    def _record_failure(self, job: UploadJob, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error("Upload failed", job_id=job.id, error=message)

        if self._store.find(job.id) is not job:
            logger.info("Discarding failure of a cancelled or replaced job", job_id=job.id)
            return

        job.attempts += 1
        job.last_error = message
        delay = backoff_delay_ms(job.attempts, self._retry_delays_ms)
        job.next_eligible_at = self._clock() + delay

        if job.attempts >= self._max_attempts:
            self._log_exhausted_once(job)
        else:
            logger.info("Will retry upload", job_id=job.id, retry_in_s=delay / 1000)

    def _remove_exact(self, job: UploadJob) -> bool:
        """Remove this job object only, never a newer job with the same id."""
        before = len(self._store.jobs)
        self._store.jobs = [j for j in self._store.jobs if j is not job]
        return len(self._store.jobs) != before

    def _log_exhausted_once(self, job: UploadJob) -> None:
        key = self._failed_key(job.id)
        if key in self._logged_skips:
            return
        self._logged_skips.add(key)
        telemetry.log_upload_event(
            telemetry.UPLOAD_FAILED_MAX_RETRIES, job.id,
            kind=job.kind.value, last_error=job.last_error,
        )

    @staticmethod
    def _failed_key(job_id: str) -> str:
        return f"failed_{job_id}"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pending_count(self) -> int:
        return len(self._store)

    def has_pending(self, job_id: str) -> bool:
        return self._store.contains(job_id)

    def pending_uris(self, kind: Optional[UploadKind] = None) -> Set[str]:
        """Local files still owned by queued jobs; the orphan sweep must keep these."""
        return {j.local_path for j in self._store.jobs if kind is None or j.kind == kind}

    def has_any_pending(self, kind: Optional[UploadKind] = None) -> bool:
        if kind is None:
            return len(self._store) > 0
        return self._store.has_kind(kind)

    def get_job(self, job_id: str) -> Optional[UploadJob]:
        """Copy of the queued job, so callers cannot mutate queue state."""
        job = self._store.find(job_id)
        return job.model_copy() if job is not None else None

    def is_failed(self, job_id: str) -> bool:
        job = self._store.find(job_id)
        return job is not None and job.attempts >= self._max_attempts

    def get_failed_job(self, job_id: str) -> Optional[UploadJob]:
        job = self._store.find(job_id)
        if job is None or job.attempts < self._max_attempts:
            return None
        return job.model_copy()

    def status(self) -> QueueStatus:
        now = self._clock()
        jobs = self._store.jobs
        failed = sum(1 for j in jobs if j.attempts >= self._max_attempts)
        ready = sum(
            1 for j in jobs
            if j.attempts < self._max_attempts
            and (j.next_eligible_at is None or j.next_eligible_at <= now)
        )
        return QueueStatus(pending=len(jobs), failed=failed, ready=ready)

    def on_idle(self, kind: Optional[UploadKind], callback: IdleCallback) -> Callable[[], None]:
        """Call ``callback(kind)`` when ``kind`` (or any kind, if None) drains to empty."""
        entry = (kind, callback)
        self._idle_listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._idle_listeners:
                self._idle_listeners.remove(entry)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._store.loaded:
            return
        await self._store.load()
        # Match the loaded state so a restart never reports a spurious idle
        for kind in UploadKind:
            self._had_jobs[kind] = self._store.has_kind(kind)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        # Host callbacks (foreground, timers) may arrive outside a coroutine
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            if self._loop is None:
                raise
        return self._loop

    def _spawn(self, coro) -> None:
        """Start a detached task. Its errors are logged and otherwise discarded."""
        if self._closing:
            logger.debug("Upload queue closed, not starting drain")
            coro.close()
            return
        task = self._get_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background upload task failed", error=str(exc))

    def _emit_idle_transitions(self) -> None:
        if self._closing:
            return
        for kind in UploadKind:
            had_jobs = self._had_jobs[kind]
            has_jobs = self._store.has_kind(kind)
            if had_jobs and not has_jobs:
                logger.info("Upload queue became idle", kind=kind.value)
                pending = self._idle_handles.pop(kind, None)
                if pending is not None:
                    pending.cancel()
                self._idle_handles[kind] = self._get_loop().call_later(
                    self._idle_debounce_ms / 1000, self._notify_idle, kind
                )
            self._had_jobs[kind] = has_jobs

    def _notify_idle(self, kind: UploadKind) -> None:
        self._idle_handles.pop(kind, None)
        for listen_kind, callback in list(self._idle_listeners):
            if listen_kind is not None and listen_kind != kind:
                continue
            try:
                callback(kind)
            except Exception as e:
                logger.error("Idle listener failed", kind=kind.value, error=str(e))

    def _clear_retry_timer(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self._next_wakeup_at = None

    def _schedule_retry_timer(self) -> None:
        self._clear_retry_timer()
        if self._closing:
            return
        now = self._clock()
        waits = [
            j.next_eligible_at for j in self._store.jobs
            if j.attempts < self._max_attempts
            and j.next_eligible_at is not None
            and j.next_eligible_at > now
        ]
        if not waits:
            return

        delay_ms = max(self._min_wakeup_delay_ms, min(waits) - now)
        logger.info("Scheduling next upload pass", in_s=round(delay_ms / 1000))
        self._next_wakeup_at = now + delay_ms
        self._retry_handle = self._get_loop().call_later(delay_ms / 1000, self._on_retry_timer)

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        self._next_wakeup_at = None
        if self._upload_fn is not None:
            self._spawn(self.drain())
