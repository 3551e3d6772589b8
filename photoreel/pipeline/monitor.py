"""
Monitoring session: polls one order's jobs until they aggregate.

    RUNNING ──(all jobs terminal | attempt ceiling)──► AGGREGATED ──► NOTIFIED

Each tick polls every open job concurrently and folds the answers in
idempotently. Infrastructure trouble (provider unreachable, store write
failed) is retried on the next tick; any other exception fails only the job
it came from. Jobs still open when the ceiling is hit are marked orphaned:
they are recorded but never polled or delivered again.
"""

import asyncio
import logging
import time
from typing import Optional

from pydantic import BaseModel, Field

from .. import metrics
from .errors import TransientProviderError, classify_error
from .models import GenerationJob, JobStatus, SessionState
from .progress import ProgressEstimator, ProgressReporter
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)


class Aggregate(BaseModel):
    """What a session ended with. Job lists keep submission order."""
    jobs: list[GenerationJob]
    succeeded: list[GenerationJob] = Field(default_factory=list)
    failed: list[GenerationJob] = Field(default_factory=list)
    orphaned: list[GenerationJob] = Field(default_factory=list)
    attempts: int = 0
    timed_out: bool = False


class MonitoringSession:
    def __init__(
        self,
        order_id: str,
        jobs: list[GenerationJob],
        factory,
        store,
        scheduler: TaskScheduler,
        reporter: Optional[ProgressReporter] = None,
        poll_interval: float = 5.0,
        max_attempts: int = 60,
    ):
        self.order_id = order_id
        self.jobs = jobs
        self.factory = factory
        self.store = store
        self.scheduler = scheduler
        self.reporter = reporter
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.estimator = ProgressEstimator(max_attempts)

        self.state = SessionState.RUNNING
        self.attempts = 0
        self.aggregate: Optional[Aggregate] = None
        self._unsaved: set[str] = set()

    # ── Per job ──────────────────────────────────────────────────────────────

    async def _persist(self, job: GenerationJob):
        try:
            await self.store.update_job(job)
            self._unsaved.discard(job.id)
        except Exception as e:
            self._unsaved.add(job.id)
            logger.warning(f"Order {self.order_id}: could not save job {job.id}, retrying next tick: {e}")

    async def _poll_one(self, job: GenerationJob):
        adapter = None
        provider = job.provider.value
        start = time.time()

        try:
            adapter = self.factory.for_job(job)
            result = await adapter.poll(job)
        except TransientProviderError as e:
            metrics.inc_counter(f"errors.poll_transient.{provider}")
            logger.warning(f"Order {self.order_id}: {provider}/{job.model} unreachable, retrying next tick: {e}")
            return
        except Exception as e:
            raw = str(e)
            kind = adapter.translate_error(raw) if adapter is not None else classify_error(raw)
            logger.error(f"Order {self.order_id}: poll of {provider}/{job.model} crashed: {raw}", exc_info=True)
            metrics.inc_counter(f"errors.poll.{provider}")
            metrics.record_error(f"poll.{provider}", kind.value, raw, self.order_id)
            if job.fail(kind, raw):
                await self._persist(job)
            return
        finally:
            metrics.record_latency(f"poll.{provider}", (time.time() - start) * 1000)

        metrics.inc_counter(f"requests.poll.{provider}")
        kind = adapter.translate_error(result.error_raw) if result.status == JobStatus.FAILED else None

        if job.apply(result, kind):
            if job.status == JobStatus.FAILED:
                metrics.record_error(f"poll.{provider}", job.error_kind.value, job.error_raw or "", self.order_id)
                logger.info(f"Order {self.order_id}: {job.model} failed ({job.error_kind.value}): {job.error_raw}")
            elif job.status == JobStatus.COMPLETED:
                logger.info(f"Order {self.order_id}: {job.model} completed → {job.result_ref}")
            await self._persist(job)

    # ── Session ──────────────────────────────────────────────────────────────

    def _open_jobs(self) -> list[GenerationJob]:
        return [j for j in self.jobs if not j.is_terminal and not j.orphaned]

    async def _flush_unsaved(self):
        for job in [j for j in self.jobs if j.id in self._unsaved]:
            await self._persist(job)

    async def tick(self) -> Optional[Aggregate]:
        """Run one polling round. Returns the aggregate once the session is done."""
        if self.state != SessionState.RUNNING:
            return self.aggregate

        await self._flush_unsaved()

        open_jobs = self._open_jobs()
        if open_jobs:
            await asyncio.gather(*(self._poll_one(job) for job in open_jobs))
            self.attempts += 1

        if not self._open_jobs() or self.attempts >= self.max_attempts:
            return await self._aggregate()
        return None

    async def _aggregate(self) -> Aggregate:
        if self.aggregate is not None:
            return self.aggregate

        orphaned = self._open_jobs()
        for job in orphaned:
            job.orphaned = True
            await self._persist(job)
        # Last chance for saves that failed on earlier ticks
        await self._flush_unsaved()
        if self._unsaved:
            logger.error(f"Order {self.order_id}: {len(self._unsaved)} job(s) still unsaved at aggregation")
        if orphaned:
            metrics.inc_counter("jobs.orphaned", len(orphaned))
            logger.warning(
                f"Order {self.order_id}: attempt ceiling {self.max_attempts} reached, "
                f"orphaning {', '.join(j.model for j in orphaned)}"
            )

        self.aggregate = Aggregate(
            jobs=self.jobs,
            succeeded=[j for j in self.jobs if j.status == JobStatus.COMPLETED],
            failed=[j for j in self.jobs if j.status == JobStatus.FAILED],
            orphaned=orphaned,
            attempts=self.attempts,
            timed_out=bool(orphaned),
        )
        self.state = SessionState.AGGREGATED
        logger.info(
            f"Order {self.order_id}: aggregated after {self.attempts} attempt(s): "
            f"{len(self.aggregate.succeeded)} succeeded, {len(self.aggregate.failed)} failed, "
            f"{len(orphaned)} orphaned"
        )
        return self.aggregate

    def mark_notified(self):
        if self.state == SessionState.AGGREGATED:
            self.state = SessionState.NOTIFIED

    def progress(self) -> Optional[float]:
        return self.estimator.overall(self.jobs, self.attempts)

    async def run(self) -> Aggregate:
        # Jobs that came back synchronously may already be done
        if not self._open_jobs():
            return await self._aggregate()

        while True:
            await self.scheduler.sleep(self.poll_interval)
            aggregate = await self.tick()
            if aggregate is not None:
                return aggregate
            if self.reporter is not None:
                await self.reporter.report(self.progress())
