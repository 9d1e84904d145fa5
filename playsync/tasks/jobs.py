"""
Task objects and the asyncio worker pool that runs them.

Every unit of work is a Job: one catalog batch, one user's inbound play
sync or one outbound play submission. A job carries its attempt count,
attempt ceiling and backoff policy; the pool retries it until it succeeds,
hits an error listed in `give_up_on`, or runs out of attempts. After that
the outcome is terminal: `failed()` runs once and the job is never
scheduled again.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Set, Tuple, Type

from sqlalchemy.ext.asyncio import async_sessionmaker

from playsync.config import settings
from playsync.database import AsyncSessionLocal
from playsync.models.enums import SyncStatus
from playsync.models.play import BoardGamePlay
from playsync.schemas.plays import BGGCredential
from playsync.services.bgg.client import BGGApiClient
from playsync.services.bgg.errors import (
    MissingExternalMapping,
    PermanentClientError,
    classify_submission_error,
)
from playsync.services.catalog_sync import CatalogSyncPipeline
from playsync.services.dedup import DeduplicationResolver
from playsync.services.play_submission import PlayOutboundSubmissionPipeline
from playsync.services.play_sync import PlayInboundSyncPipeline
from playsync.utils.logging import log_error, log_info, log_success, log_warning

SUCCEEDED = "succeeded"
RETRY = "retry"
FAILED = "failed"


@dataclass
class BackoffPolicy:
    """Fixed delay between attempts, optionally growing by `multiplier` up to `max_seconds`."""

    seconds: float = field(default_factory=lambda: settings.JOB_BACKOFF_SECONDS)
    multiplier: float = 1.0
    max_seconds: Optional[float] = None

    def delay(self, attempt: int) -> float:
        delay = self.seconds * (self.multiplier ** max(0, attempt - 1))
        if self.max_seconds is not None:
            delay = min(delay, self.max_seconds)
        return delay


@dataclass
class JobContext:
    catalog: CatalogSyncPipeline
    plays: PlayInboundSyncPipeline
    submission: PlayOutboundSubmissionPipeline
    session_factory: async_sessionmaker = AsyncSessionLocal


def build_context(
    client: Optional[BGGApiClient] = None,
    session_factory: async_sessionmaker = AsyncSessionLocal,
    resolver: Optional[DeduplicationResolver] = None,
) -> JobContext:
    client = client or BGGApiClient()
    catalog = CatalogSyncPipeline(client, session_factory)
    return JobContext(
        catalog=catalog,
        plays=PlayInboundSyncPipeline(client, catalog, resolver, session_factory),
        submission=PlayOutboundSubmissionPipeline(client, session_factory=session_factory),
        session_factory=session_factory,
    )


class Job:
    name = "job"
    give_up_on: Tuple[Type[BaseException], ...] = ()

    def __init__(self, max_attempts: Optional[int] = None, backoff: Optional[BackoffPolicy] = None) -> None:
        self.attempts = 0
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        self.backoff = backoff or BackoffPolicy()
        self.state = "queued"
        self.last_error: Optional[BaseException] = None
        self.result: Any = None

    @property
    def key(self) -> Tuple:
        """Jobs with the same key are not queued twice."""
        return (self.name, id(self))

    async def run(self, ctx: JobContext) -> Any:
        raise NotImplementedError

    async def failed(self, ctx: JobContext, error: BaseException) -> None:
        pass

    def should_retry(self, error: BaseException) -> bool:
        if isinstance(error, self.give_up_on):
            return False
        return self.attempts < self.max_attempts

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key[1:]} attempt {self.attempts}/{self.max_attempts}>"


class SyncCatalogBatchJob(Job):
    name = "catalog_batch"

    def __init__(self, bgg_ids: List[str], **kwargs) -> None:
        super().__init__(**kwargs)
        self.bgg_ids = list(bgg_ids)

    @property
    def key(self) -> Tuple:
        return (self.name, tuple(self.bgg_ids))

    async def run(self, ctx: JobContext) -> Dict[str, int]:
        return await ctx.catalog.sync_by_bgg_ids(self.bgg_ids)


class SyncUserPlaysJob(Job):
    name = "user_plays"

    def __init__(
        self,
        user_id: int,
        min_date: Optional[date] = None,
        max_date: Optional[date] = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.user_id = user_id
        self.min_date = min_date
        self.max_date = max_date

    @property
    def key(self) -> Tuple:
        return (self.name, self.user_id, self.min_date, self.max_date)

    async def run(self, ctx: JobContext) -> Set[str]:
        return await ctx.plays.sync_user_plays(self.user_id, self.min_date, self.max_date)


class SubmitPlayJob(Job):
    name = "submit_play"
    give_up_on = (MissingExternalMapping, PermanentClientError)

    def __init__(self, play_id: int, credential: Optional[BGGCredential] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.play_id = play_id
        self.credential = credential

    @property
    def key(self) -> Tuple:
        return (self.name, self.play_id)

    async def run(self, ctx: JobContext) -> Optional[str]:
        return await ctx.submission.submit(self.play_id, self.credential)

    async def failed(self, ctx: JobContext, error: BaseException) -> None:
        # the pipeline records its own failures; timeouts and crashes outside it land here
        async with ctx.session_factory() as session:
            play = await session.get(BoardGamePlay, self.play_id)
            if play is None or play.submit_status == SyncStatus.FAILED:
                return
            play.submit_status = SyncStatus.FAILED
            play.submit_error = classify_submission_error(error)
            await session.commit()


class WorkerPool:
    """N asyncio workers over a queue; retries are re-enqueued after the job's backoff delay."""

    def __init__(
        self,
        context: JobContext,
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.context = context
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.timeout = timeout or settings.JOB_TIMEOUT_SECONDS
        self._sleep = sleep
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._delayed: Set[asyncio.Task] = set()
        self._active_keys: Set[Tuple] = set()
        self._idle: Optional[asyncio.Event] = None
        self.failed_jobs: List[Job] = []

    # ------------------
    # lifecycle
    # ------------------

    async def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.concurrency)]
        log_info(f"Worker pool started with {self.concurrency} worker(s)")

    async def join(self) -> None:
        """Wait until every queued job is finished, including retries still waiting on their backoff."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        tasks = [*self._workers, *self._delayed]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        log_info("Worker pool stopped")

    # ------------------
    # scheduling
    # ------------------

    def is_active(self, job: Job) -> bool:
        return job.key in self._active_keys

    async def enqueue(self, job: Job, delay: float = 0) -> bool:
        if self._queue is None:
            raise RuntimeError("worker pool is not started")
        if job.key in self._active_keys:
            log_info(f"{job!r} already queued, skipping")
            return False
        self._active_keys.add(job.key)
        self._idle.clear()
        self._schedule(job, delay)
        return True

    def _schedule(self, job: Job, delay: float) -> None:
        if delay <= 0:
            self._queue.put_nowait(job)
            return
        task = asyncio.create_task(self._delayed_put(job, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _delayed_put(self, job: Job, delay: float) -> None:
        await self._sleep(delay)
        self._queue.put_nowait(job)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                try:
                    outcome = await self.attempt(job)
                except Exception as e:
                    log_error(f"Worker {index}: failure hook of {job!r} crashed: {type(e).__name__}: {e}")
                    outcome = FAILED
                if outcome == RETRY:
                    self._schedule(job, job.backoff.delay(job.attempts))
                else:
                    self._active_keys.discard(job.key)
                    if not self._active_keys:
                        self._idle.set()
            finally:
                self._queue.task_done()

    # ------------------
    # execution
    # ------------------

    async def attempt(self, job: Job) -> str:
        """Run one attempt of `job`; returns SUCCEEDED, RETRY or FAILED."""
        job.attempts += 1
        job.state = "running"
        try:
            job.result = await asyncio.wait_for(job.run(self.context), timeout=self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_error = e
            if job.should_retry(e):
                job.state = "retrying"
                log_warning(f"{job!r} failed ({type(e).__name__}: {e}), will retry")
                return RETRY

            job.state = FAILED
            log_error(f"{job!r} failed permanently: {type(e).__name__}: {e}")
            self.failed_jobs.append(job)
            await job.failed(self.context, e)
            return FAILED

        job.state = SUCCEEDED
        log_success(f"{job!r} done")
        return SUCCEEDED

    async def run_until_complete(self, job: Job) -> Job:
        """Run every attempt of `job` inline (no queue), sleeping out the backoff between them."""
        while True:
            outcome = await self.attempt(job)
            if outcome != RETRY:
                return job
            await self._sleep(job.backoff.delay(job.attempts))
