"""Index builds off the event loop, in a separate worker process.

Small file sets are built directly in the calling event loop. Larger ones
are handed to a ``multiprocessing`` worker that talks to the manager only
through WorkerMessages: one build request in, zero or more progress updates
and a single result or error out. Only one worker build is in flight at a
time; starting another cancels the previous one first.
"""

import asyncio
import logging
import multiprocessing
import queue
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .build_index import BuildOptions, BuildResult, IndexBuilder
from .cache import ParseCache

logger = logging.getLogger(__name__)

DEFAULT_WORKER_THRESHOLD = 500
DEFAULT_CANCEL_TIMEOUT = 1.0
DEFAULT_POLL_INTERVAL = 0.05
DEFAULT_MAX_JOB_HISTORY = 50


class WorkerBuildError(Exception):
    """A worker build crashed, exited abnormally or reported an error."""


class BuildCancelledError(Exception):
    """A build was superseded or cancelled before it produced a result."""


class MessageType(str, Enum):
    """Worker protocol message types."""

    BUILD = "build"
    CANCEL = "cancel"
    RESULT = "result"
    ERROR = "error"
    PROGRESS = "progress"


@dataclass
class WorkerMessage:
    type: MessageType
    id: str
    payload: Any = None


@dataclass
class WorkerBuildRequest:
    files: List[str]
    options: BuildOptions


@dataclass
class WorkerProgress:
    processed: int = 0
    total: int = 0
    current_file: str = ""


class JobStatus(str, Enum):
    """Job status states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class WorkerJob:
    """Bookkeeping for one build request."""

    job_id: str
    file_count: int
    mode: str  # in_loop | worker
    status: JobStatus
    created_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    progress: WorkerProgress = field(default_factory=WorkerProgress)
    error: Optional[str] = None


def _worker_main(request_id: str, inbox, outbox, cancel_event) -> None:
    """Worker process entry point.

    Waits for one build request, runs it and posts progress and the
    terminal result or error to ``outbox``. Once ``cancel_event`` is set
    nothing more is posted.
    """
    message = inbox.get()
    if message.type != MessageType.BUILD or message.id != request_id:
        return

    request: WorkerBuildRequest = message.payload

    def report(processed: int, total: int, current_file: str) -> None:
        if not cancel_event.is_set():
            outbox.put(
                WorkerMessage(
                    MessageType.PROGRESS, request_id, WorkerProgress(processed, total, current_file)
                )
            )

    try:
        builder = IndexBuilder(cache=ParseCache() if request.options.use_cache else None)
        result = builder.build(request.files, request.options, report, cancel_event.is_set)
    except Exception as e:
        if not cancel_event.is_set():
            outbox.put(WorkerMessage(MessageType.ERROR, request_id, f"{type(e).__name__}: {e}"))
        return

    if not cancel_event.is_set():
        outbox.put(WorkerMessage(MessageType.RESULT, request_id, result))


@dataclass
class _ActiveWorker:
    request_id: str
    process: Any
    inbox: Any
    outbox: Any
    cancel_event: Any


class WorkerManager:
    """Runs index builds in-loop or in a worker process depending on size."""

    def __init__(
        self,
        builder: Optional[IndexBuilder] = None,
        threshold: int = DEFAULT_WORKER_THRESHOLD,
        cancel_timeout: float = DEFAULT_CANCEL_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_job_history: int = DEFAULT_MAX_JOB_HISTORY,
        worker_target: Callable[..., None] = _worker_main,
    ):
        """Initialize the manager.

        Args:
            builder: Builder used for in-loop builds
            threshold: Builds with more files than this run in a worker
            cancel_timeout: Seconds to wait for a cancelled worker before terminating it
            poll_interval: Seconds between result queue polls
            max_job_history: Finished jobs kept for status queries; older ones are dropped
            worker_target: Worker process entry point, a module-level function
                taking (request_id, inbox, outbox, cancel_event)
        """
        self.builder = builder or IndexBuilder()
        self.threshold = threshold
        self.cancel_timeout = cancel_timeout
        self.poll_interval = poll_interval
        self.max_job_history = max_job_history
        self.worker_target = worker_target
        self.jobs: Dict[str, WorkerJob] = {}
        self._current: Optional[_ActiveWorker] = None
        self._context = multiprocessing.get_context("spawn")

    def create_job(self, file_count: int, mode: str) -> WorkerJob:
        job = WorkerJob(
            job_id=str(uuid.uuid4())[:8],
            file_count=file_count,
            mode=mode,
            status=JobStatus.QUEUED,
            created_at=time.time(),
        )
        self.jobs[job.job_id] = job
        logger.info(f"Created build job {job.job_id} ({file_count} files, {mode})")
        return job

    def get_job(self, job_id: str) -> Optional[WorkerJob]:
        return self.jobs.get(job_id)

    def list_jobs(self) -> List[WorkerJob]:
        return list(self.jobs.values())

    def is_busy(self) -> bool:
        return self._current is not None

    def _mark_started(self, job: WorkerJob) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = time.time()

    def _mark_finished(self, job: WorkerJob, status: JobStatus, error: Optional[str] = None) -> None:
        if job.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
            return
        job.status = status
        job.completed_at = time.time()
        job.error = error
        if status == JobStatus.FAILED:
            logger.error(f"Build job {job.job_id} failed: {error}")
        else:
            logger.info(f"Build job {job.job_id} {status.value}")
        self._prune_jobs()

    def _prune_jobs(self) -> None:
        finished = [
            job_id
            for job_id, job in self.jobs.items()
            if job.status not in (JobStatus.QUEUED, JobStatus.RUNNING)
        ]
        # jobs are kept in creation order, so the oldest finished come first
        for job_id in finished[: max(0, len(finished) - self.max_job_history)]:
            del self.jobs[job_id]

    def _update_progress(self, job: WorkerJob, progress: WorkerProgress) -> None:
        job.progress = progress

    async def build_index(
        self,
        files: Sequence[str],
        options: Optional[BuildOptions] = None,
        on_progress: Optional[Callable[[WorkerProgress], None]] = None,
    ) -> BuildResult:
        """Build an index, offloading to a worker above the threshold.

        Raises:
            WorkerBuildError: the worker crashed, exited non-zero or reported an error
            BuildCancelledError: this build was superseded by a newer one
        """
        options = options or BuildOptions()
        files = list(files)

        # a new build always supersedes a running worker build
        await self.cancel_current_build()

        if len(files) <= self.threshold:
            logger.info(
                f"Building index in-loop ({len(files)} files <= {self.threshold} threshold)"
            )
            job = self.create_job(len(files), "in_loop")
            self._mark_started(job)

            def report(processed: int, total: int, current_file: str) -> None:
                progress = WorkerProgress(processed, total, current_file)
                self._update_progress(job, progress)
                if on_progress:
                    on_progress(progress)

            try:
                result = self.builder.build(files, options, report)
            except Exception as e:
                self._mark_finished(job, JobStatus.FAILED, str(e))
                raise
            self._mark_finished(job, JobStatus.COMPLETED)
            return result

        logger.info(f"Building index in worker ({len(files)} files > {self.threshold} threshold)")
        job = self.create_job(len(files), "worker")
        return await self._build_in_worker(files, options, on_progress, job)

    async def _build_in_worker(
        self,
        files: List[str],
        options: BuildOptions,
        on_progress: Optional[Callable[[WorkerProgress], None]],
        job: WorkerJob,
    ) -> BuildResult:
        request_id = job.job_id
        inbox = self._context.Queue()
        outbox = self._context.Queue()
        cancel_event = self._context.Event()
        process = self._context.Process(
            target=self.worker_target,
            args=(request_id, inbox, outbox, cancel_event),
            name=f"tfnav-build-{request_id}",
            daemon=True,
        )
        process.start()

        active = _ActiveWorker(request_id, process, inbox, outbox, cancel_event)
        self._current = active
        self._mark_started(job)
        inbox.put(
            WorkerMessage(MessageType.BUILD, request_id, WorkerBuildRequest(files, options))
        )

        try:
            while True:
                if self._current is not active:
                    self._mark_finished(job, JobStatus.CANCELLED)
                    raise BuildCancelledError(f"Build {request_id} was cancelled")

                message = self._poll(outbox)
                if message is None:
                    if not process.is_alive():
                        # a result posted just before exit may still be in flight
                        message = self._poll(outbox, timeout=self.poll_interval)
                        if message is None:
                            error = (
                                f"Worker stopped with exit code {process.exitcode}"
                                if process.exitcode
                                else "Worker exited without producing a result"
                            )
                            self._mark_finished(job, JobStatus.FAILED, error)
                            raise WorkerBuildError(error)
                    else:
                        await asyncio.sleep(self.poll_interval)
                        continue

                if message.id != request_id:
                    continue

                if message.type == MessageType.PROGRESS:
                    self._update_progress(job, message.payload)
                    if on_progress:
                        on_progress(message.payload)
                elif message.type == MessageType.RESULT:
                    self._mark_finished(job, JobStatus.COMPLETED)
                    return message.payload
                elif message.type == MessageType.ERROR:
                    self._mark_finished(job, JobStatus.FAILED, str(message.payload))
                    raise WorkerBuildError(str(message.payload))
        finally:
            if self._current is active:
                self._current = None
                await self._shutdown(active, wait=True)

    @staticmethod
    def _poll(outbox, timeout: Optional[float] = None) -> Optional[WorkerMessage]:
        try:
            if timeout is None:
                return outbox.get_nowait()
            return outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    async def _shutdown(self, active: _ActiveWorker, wait: bool) -> None:
        loop = asyncio.get_running_loop()
        if wait and active.process.is_alive():
            await loop.run_in_executor(None, active.process.join, self.cancel_timeout)
        if active.process.is_alive():
            logger.warning(f"Worker {active.request_id} did not stop in time, terminating")
            active.process.terminate()
            await loop.run_in_executor(None, active.process.join, self.cancel_timeout)

        for q in (active.inbox, active.outbox):
            q.cancel_join_thread()
            q.close()

    async def cancel_current_build(self) -> bool:
        """Cancel the in-flight worker build, if any.

        The worker is signalled and given ``cancel_timeout`` seconds to exit
        before it is terminated. A worker that does not answer in time is
        simply treated as cancelled.

        Returns:
            True if a build was cancelled
        """
        active = self._current
        if active is None:
            return False

        logger.info(f"Cancelling worker build {active.request_id}")
        self._current = None
        active.cancel_event.set()
        try:
            active.inbox.put_nowait(WorkerMessage(MessageType.CANCEL, active.request_id))
        except (ValueError, OSError, queue.Full) as e:
            logger.debug(f"Could not post cancel message to worker {active.request_id}: {e}")

        await self._shutdown(active, wait=True)

        job = self.jobs.get(active.request_id)
        if job:
            self._mark_finished(job, JobStatus.CANCELLED)
        return True

    async def dispose(self) -> None:
        await self.cancel_current_build()

    def get_status_dict(self, job: WorkerJob) -> dict:
        """Convert a job to a status dictionary."""
        progress_pct = 0.0
        if job.progress.total > 0:
            progress_pct = (job.progress.processed / job.progress.total) * 100

        result = {
            "job_id": job.job_id,
            "mode": job.mode,
            "file_count": job.file_count,
            "status": job.status.value,
            "created_at": job.created_at,
            "progress": {
                "processed": job.progress.processed,
                "total": job.progress.total,
                "progress_pct": round(progress_pct, 2),
                "current_file": job.progress.current_file,
            },
        }

        if job.started_at:
            result["started_at"] = job.started_at
            if job.status == JobStatus.RUNNING:
                result["elapsed_seconds"] = round(time.time() - job.started_at, 2)

        if job.completed_at:
            result["completed_at"] = job.completed_at
            if job.started_at:
                result["total_seconds"] = round(job.completed_at - job.started_at, 2)

        if job.error:
            result["error"] = job.error

        return result
