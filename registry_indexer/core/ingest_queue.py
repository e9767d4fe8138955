"""
Ingestion Job Queue

A single-worker, poll-driven scheduler for ingestion jobs. The poll loop runs
as an asyncio task; each tick selects at most one due job and runs its
blocking handler in an executor, so the event loop stays free for enqueue and
status calls while no two jobs ever run at the same time.
"""

import asyncio
import random
import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from registry_indexer.core.backfill_controller import BackfillController
from registry_indexer.core.errors import ErrorKind, IndexerError, error_kind_of
from registry_indexer.core.event_fetcher import LedgerEventFetcher
from registry_indexer.core.operations_ingestor import OperationsIngestor
from registry_indexer.core.types import IngestJob, JobPayload, JobType
from registry_indexer.utils.log import get_default_logger

_LOG = get_default_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_BASE_BACKOFF_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 5

# Continuous jobs that caught up with the tip wait at least this long.
TIP_WAIT_POLL_MULTIPLIER = 5
MIN_TIP_WAIT_SECONDS = 5.0

BACKOFF_JITTER = 0.2
# Continuous jobs retry forever; their delay stops growing here.
MAX_BACKOFF_SECONDS = 600.0
MAX_STATUS_JOBS = 10

QUEUE_EVENTS = (
    "started",
    "stopped",
    "enqueued",
    "started:job",
    "completed:job",
    "failed:job",
    "requeued:job",
    "dead:job",
)

JobHandler = Callable[[JobPayload], Any]
Listener = Callable[[Any], None]


def create_job_handlers(
    fetcher: LedgerEventFetcher,
    backfill_controller: BackfillController,
    operations_ingestor: OperationsIngestor,
) -> Dict[JobType, JobHandler]:
    """
    Map every job type to the component that runs it.

    :param fetcher: Runs fetch-events jobs.
    :param backfill_controller: Runs fetch-recurring jobs.
    :param operations_ingestor: Runs the operations jobs.
    :return: The handler table.
    """
    return {
        JobType.FETCH_EVENTS: lambda payload: fetcher.fetch_and_store(payload.start_ledger),
        JobType.FETCH_RECURRING: lambda payload: backfill_controller.perform_backfill(
            payload.start_ledger, payload.end_ledger
        ),
        JobType.FETCH_CONTRACT_OPERATIONS: lambda payload: operations_ingestor.fetch_contract_operations(
            payload.contract_ids, payload.start_ledger, payload.include_failed_tx
        ),
        JobType.BACKFILL_MISSING_OPERATIONS: lambda payload: operations_ingestor.backfill_missing_operations(
            payload.start_ledger, payload.end_ledger
        ),
    }


class IngestQueue:
    """
    Owns the pending job list and the poll loop.

    Lifecycle signals are delivered to listeners registered with on():
    started, stopped, enqueued, started:job, completed:job, failed:job,
    requeued:job and dead:job.
    """

    # pylint: disable-msg=too-many-arguments
    def __init__(
        self,
        handlers: Dict[JobType, JobHandler],
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        base_backoff: float = DEFAULT_BASE_BACKOFF_SECONDS,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        """
        :param handlers: Blocking callables per job type.
        :param poll_interval: Seconds between ticks.
        :param base_backoff: Minimum retry delay in seconds.
        :param clock: Source of the current time in epoch seconds.
        :param rng: Random source for backoff jitter.
        """
        self.handlers = dict(handlers)
        self.poll_interval = poll_interval
        self.base_backoff = base_backoff
        self._clock = clock
        self._rng = rng or random.Random()
        self._pending_jobs: List[IngestJob] = []
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Listener]] = {name: [] for name in QUEUE_EVENTS}
        self._running = False
        self._processing = False
        self._task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def processing(self) -> bool:
        return self._processing

    def on(self, event_name: str, listener: Listener):
        """
        Register a lifecycle listener.

        :param event_name: One of QUEUE_EVENTS.
        :param listener: Called with the event's payload.
        """
        if event_name not in self._listeners:
            raise ValueError(f"Unknown queue event: {event_name}")
        self._listeners[event_name].append(listener)

    def _emit(self, event_name: str, payload: Any = None):
        for listener in self._listeners[event_name]:
            try:
                listener(payload)
            except Exception:  # pylint: disable=broad-except
                _LOG.exception("Listener for %s failed", event_name)

    def enqueue(
        self,
        job_type: JobType,
        payload: Optional[JobPayload] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delay: float = 0.0,
    ) -> str:
        """
        Add a job to the pending list.

        :param job_type: The job type.
        :param payload: The job payload.
        :param max_attempts: Failures tolerated before a bounded job is dropped.
        :param delay: Seconds before the job becomes due.
        :return: The job id.
        """
        job_type = JobType(job_type)
        now = self._clock()
        job = IngestJob(
            id=f"{job_type.value}-{int(now * 1000)}-{uuid.uuid4().hex[:10]}",
            type=job_type,
            payload=payload or JobPayload(),
            attempts=0,
            max_attempts=max_attempts,
            next_run_at=now + delay,
        )
        self._push(job)
        self._emit("enqueued", job)
        _LOG.info(
            "Job enqueued: id=%s type=%s payload=%s",
            job.id,
            job.type.value,
            job.payload.to_dict(),
        )
        return job.id

    def enqueue_fetch_events(self, start_ledger: Optional[int] = None, **kwargs) -> str:
        return self.enqueue(JobType.FETCH_EVENTS, JobPayload(start_ledger=start_ledger), **kwargs)

    def enqueue_backfill(
        self, start_ledger: Optional[int] = None, end_ledger: Optional[int] = None, **kwargs
    ) -> str:
        return self.enqueue(
            JobType.FETCH_RECURRING,
            JobPayload(start_ledger=start_ledger, end_ledger=end_ledger),
            **kwargs,
        )

    def enqueue_contract_operations(
        self,
        contract_ids: Optional[Sequence[str]] = None,
        start_ledger: Optional[int] = None,
        include_failed_tx: bool = True,
        **kwargs,
    ) -> str:
        payload = JobPayload(
            start_ledger=start_ledger,
            contract_ids=list(contract_ids) if contract_ids else None,
            include_failed_tx=include_failed_tx,
        )
        return self.enqueue(JobType.FETCH_CONTRACT_OPERATIONS, payload, **kwargs)

    def enqueue_missing_operations(
        self, start_ledger: Optional[int] = None, end_ledger: Optional[int] = None, **kwargs
    ) -> str:
        return self.enqueue(
            JobType.BACKFILL_MISSING_OPERATIONS,
            JobPayload(start_ledger=start_ledger, end_ledger=end_ledger),
            **kwargs,
        )

    def _push(self, job: IngestJob):
        with self._lock:
            self._pending_jobs.append(job)

    def _take_due_job(self) -> Optional[IngestJob]:
        now = self._clock()
        with self._lock:
            for index, job in enumerate(self._pending_jobs):
                if job.next_run_at <= now:
                    return self._pending_jobs.pop(index)
        return None

    def get_status(self) -> dict:
        """
        :return: {"size", "running", "processing", "nextJobs"} with at most ten upcoming jobs.
        """
        now = self._clock()
        with self._lock:
            size = len(self._pending_jobs)
            next_jobs = list(self._pending_jobs[:MAX_STATUS_JOBS])
        return {
            "size": size,
            "running": self._running,
            "processing": self._processing,
            "nextJobs": [
                {
                    "id": job.id,
                    "type": job.type.value,
                    "nextRunInMs": max(0, int((job.next_run_at - now) * 1000)),
                    "attempts": job.attempts,
                }
                for job in next_jobs
            ],
        }

    def compute_backoff(self, attempt_index: int) -> float:
        """
        Exponential backoff with +/-20% jitter, never below the base backoff
        and never above MAX_BACKOFF_SECONDS.

        :param attempt_index: Zero based index of the failed attempt.
        :return: The delay in seconds.
        """
        delay = self.base_backoff * 2**attempt_index
        jitter = delay * (self._rng.random() * 2 * BACKOFF_JITTER - BACKOFF_JITTER)
        return min(MAX_BACKOFF_SECONDS, max(self.base_backoff, delay + jitter))

    def _tip_wait_delay(self) -> float:
        return max(self.poll_interval * TIP_WAIT_POLL_MULTIPLIER, MIN_TIP_WAIT_SECONDS)

    async def start(self):
        """Start the poll loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        self._emit("started")
        _LOG.info("Ingest queue started (poll interval %ss)", self.poll_interval)

    async def stop(self):
        """Stop the poll loop. A job in progress runs to completion first."""
        if not self._running:
            return
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._emit("stopped")
        _LOG.info("Ingest queue stopped")

    async def _run_loop(self):
        while self._running:
            await self.tick()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> bool:
        """
        Run at most one due job.

        :return: True if a job ran.
        """
        if self._processing:
            return False
        job = self._take_due_job()
        if job is None:
            return False
        self._processing = True
        try:
            await self._execute(job)
        finally:
            self._processing = False
        return True

    async def _execute(self, job: IngestJob):
        self._emit("started:job", job)
        _LOG.info(
            "Job started: id=%s type=%s attempts=%s payload=%s",
            job.id,
            job.type.value,
            job.attempts,
            job.payload.to_dict(),
        )
        try:
            handler = self.handlers.get(job.type)
            if handler is None:
                raise IndexerError(f"No handler for job type {job.type.value}", ErrorKind.INVALID_JOB)
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, handler, job.payload)
        except Exception as e:  # pylint: disable=broad-except
            self._handle_failure(job, e)
            return
        self._emit("completed:job", {"job": job, "result": result})
        _LOG.info("Job completed: id=%s result=%s", job.id, result)
        self._requeue_continuous(job, result)

    def _requeue_continuous(self, job: IngestJob, result: Any):
        if not job.continuous:
            return
        processed = getattr(result, "processed_up_to_ledger", None)
        if processed is None:
            return
        end_ledger = job.payload.end_ledger
        if end_ledger is not None and processed >= end_ledger:
            _LOG.info("Job %s reached end ledger %s", job.id, end_ledger)
            return

        delay = self._tip_wait_delay() if getattr(result, "waiting_for_tip", False) else self.poll_interval
        next_job = replace(
            job,
            payload=replace(job.payload, start_ledger=processed + 1),
            attempts=0,
            next_run_at=self._clock() + delay,
        )
        self._push(next_job)
        self._emit("requeued:job", {"job": next_job, "delay": delay})
        _LOG.info("Job %s continues from ledger %s in %ss", job.id, processed + 1, delay)

    def _handle_failure(self, job: IngestJob, error: Exception):
        job.attempts += 1
        kind = error_kind_of(error)
        self._emit("failed:job", {"job": job, "error": str(error), "kind": kind})
        _LOG.error(
            "Job failed: id=%s attempts=%s/%s error=%s",
            job.id,
            job.attempts,
            job.max_attempts,
            error,
        )

        if kind != ErrorKind.INVALID_JOB and (job.continuous or job.attempts < job.max_attempts):
            backoff = self.compute_backoff(job.attempts - 1)
            job.next_run_at = self._clock() + backoff
            self._push(job)
            self._emit("requeued:job", {"job": job, "delay": backoff})
            _LOG.info("Job %s requeued after failure, retry in %.1fs", job.id, backoff)
            return

        self._emit("dead:job", job)
        _LOG.warning("Job dead: id=%s attempts=%s", job.id, job.attempts)
