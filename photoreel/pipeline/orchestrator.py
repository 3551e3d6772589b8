"""
JobOrchestrator: drives an order from admission to delivery.

  process_order(order_id)
    1. Admission: count processing orders; over the ceiling → throttled + notice
    2. Reservation: a credit-funded order takes its credit before any provider
       work; an owner who cannot cover it gets a failed order, not a free video
    3. Submission: fan out / single channel through the provider factory
    4. Monitoring: poll until aggregated (all jobs terminal or attempt ceiling)
    5. Finalize:
         ≥1 success → completed, deliver every result, the reserved credit stays taken
         0 successes → failed, refund what was taken, tell the owner their balance

combine_and_animate runs two monitoring sessions back to back: the combined
still from stage 1 is the input of stage 2.

Terminal transitions are compare-and-set on `processing`, so whichever path
finalizes an order first (monitor or stale sweep) is the only one that
delivers or refunds.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .. import metrics
from .admission import AdmissionController, AdmissionOutcome
from .delivery import (
    INSUFFICIENT_CREDITS_MESSAGE,
    format_failure,
    format_next_photo_hint,
    format_results,
    format_started_from_queue,
    format_throttled,
    labeled_results,
)
from .errors import USER_MESSAGES, SubmissionError, failure_reason
from .ledger import CreditLedger
from .models import (
    STARTABLE_STATUSES,
    COMBINE_PROMPT,
    DEFAULT_ANIMATION_PROMPT,
    ErrorKind,
    GenerationJob,
    JobView,
    Order,
    OrderKind,
    OrderStatus,
    OrderStatusResponse,
)
from .monitor import Aggregate, MonitoringSession
from .progress import ProgressReporter
from .scheduler import ScheduledTask, TaskScheduler
from .store import OrderStore

logger = logging.getLogger(__name__)

CREDITS_PER_ORDER = 1
STALE_JOB_MESSAGE = "Order exceeded the processing time limit"


class JobOrchestrator:
    def __init__(
        self,
        store: OrderStore,
        ledger: CreditLedger,
        factory,
        notifier,
        scheduler: Optional[TaskScheduler] = None,
        sessions=None,
        max_concurrent_orders: int = 3,
        poll_interval: float = 5.0,
        max_poll_attempts: int = 60,
        stale_order_minutes: int = 30,
    ):
        self.store = store
        self.ledger = ledger
        self.factory = factory
        self.notifier = notifier
        self.scheduler = scheduler or TaskScheduler()
        self.sessions = sessions
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.stale_order_minutes = stale_order_minutes
        self.admission = AdmissionController(store, max_concurrent_orders)

        self._live: dict[str, ScheduledTask] = {}
        self._reporters: dict[str, ProgressReporter] = {}

    @classmethod
    def from_settings(cls, settings, store, ledger, factory, notifier, scheduler=None, sessions=None):
        return cls(
            store=store,
            ledger=ledger,
            factory=factory,
            notifier=notifier,
            scheduler=scheduler,
            sessions=sessions,
            max_concurrent_orders=settings.max_concurrent_orders,
            poll_interval=settings.poll_interval_seconds,
            max_poll_attempts=settings.max_poll_attempts,
            stale_order_minutes=settings.stale_order_minutes,
        )

    # ── Entry points ─────────────────────────────────────────────────────────

    async def process_order(self, order_id: str) -> Optional[ScheduledTask]:
        """
        Admit and submit an order, then monitor it in the background.

        Returns the monitoring task handle, or None when the order was
        throttled, failed at submission, or is not in a startable state.
        Raises OrderNotFoundError for unknown ids.
        """
        order = await self.store.get_order(order_id)

        if order_id in self._live:
            logger.info(f"Order {order_id} is already being monitored")
            return self._live[order_id]
        if order.status not in STARTABLE_STATUSES:
            logger.warning(f"Order {order_id} is {order.status.value}, not startable, ignoring")
            return None

        outcome = await self.admission.admit(order)
        if outcome == AdmissionOutcome.SKIPPED:
            logger.info(f"Order {order_id} changed status during admission, ignoring")
            return None
        if outcome == AdmissionOutcome.THROTTLED:
            position = await self.admission.queue_position(order_id)
            await self._notify(order.owner_ref, format_throttled(position))
            return None

        return await self._start(order)

    async def process_throttled_orders(self) -> int:
        """Start as many queued orders as there are free slots, oldest first."""
        promoted = await self.admission.select_throttled()
        for order in promoted:
            self.scheduler.spawn(self._start_promoted(order), name=f"promote:{order.id}")
        return len(promoted)

    async def process_pending_orders(self) -> int:
        """
        Fail orders stuck in processing past the staleness threshold that no
        live session owns. Their open jobs are marked PROVIDER_TIMEOUT.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.stale_order_minutes)
        failed = 0

        for order in await self.store.get_orders_by_status(OrderStatus.PROCESSING):
            if order.id in self._live or order.updated_at > cutoff:
                continue

            logger.warning(f"Order {order.id} stuck in processing since {order.updated_at.isoformat()}")
            for job in await self.store.get_jobs(order.id):
                if job.fail(ErrorKind.PROVIDER_TIMEOUT, STALE_JOB_MESSAGE):
                    await self.store.update_job(job)

            if await self._finalize_failure(
                order, ErrorKind.PROVIDER_TIMEOUT, USER_MESSAGES[ErrorKind.PROVIDER_TIMEOUT]
            ):
                failed += 1

        if failed:
            metrics.inc_counter("orders.stale_failed", failed)
            logger.info(f"Pending sweep failed {failed} stale order(s)")
        return failed

    async def get_status(self, order_id: str) -> OrderStatusResponse:
        order = await self.store.get_order(order_id)
        jobs = await self.store.get_jobs(order_id)

        queue_position = None
        if order.status == OrderStatus.THROTTLED:
            queue_position = await self.admission.queue_position(order_id)

        reporter = self._reporters.get(order_id)
        return OrderStatusResponse(
            order_id=order.id,
            status=order.status,
            kind=order.kind,
            result_refs=order.result_refs,
            jobs=[
                JobView(
                    id=j.id,
                    provider=j.provider,
                    model=j.model,
                    stage=j.stage,
                    status=j.status,
                    result_ref=j.result_ref,
                    error_kind=j.error_kind,
                    orphaned=j.orphaned,
                )
                for j in jobs
            ],
            queue_position=queue_position,
            progress_pct=reporter.last_pct if reporter else None,
        )

    @property
    def live_orders(self) -> int:
        return len(self._live)

    # ── Submission ───────────────────────────────────────────────────────────

    async def _start_promoted(self, order: Order):
        await self._notify(order.owner_ref, format_started_from_queue())
        await self._start(order)

    async def _submit(self, order: Order, stage: int, artifact_ref: str) -> list[GenerationJob]:
        if order.kind == OrderKind.COMBINE_AND_ANIMATE and stage == 1:
            adapter = self.factory.combine_adapter()
            return await adapter.submit(order.id, artifact_ref, COMBINE_PROMPT, order.secondary_ref, stage=1)

        adapter = self.factory.animation_adapter()
        secondary = order.secondary_ref if order.kind == OrderKind.MERGE else None
        prompt = order.prompt or DEFAULT_ANIMATION_PROMPT
        return await adapter.submit(order.id, artifact_ref, prompt, secondary, stage=stage)

    async def _reserve_credit(self, order: Order) -> bool:
        """Take whatever part of the order's credit is still owed. Paid orders skip the ledger."""
        if await self.store.has_associated_payment(order.id):
            return True
        owed = CREDITS_PER_ORDER - await self.ledger.net_charge(order.owner_ref, order.id)
        if owed <= 0:
            return True
        return await self.ledger.debit(order.owner_ref, owed, order.id)

    async def _start(self, order: Order) -> Optional[ScheduledTask]:
        if not await self._reserve_credit(order):
            logger.info(f"Order {order.id}: owner {order.owner_ref} cannot cover the order, failing it")
            metrics.inc_counter("orders.insufficient_credits")
            await self._finalize_failure(order, ErrorKind.UNKNOWN, INSUFFICIENT_CREDITS_MESSAGE)
            return None

        try:
            jobs = await self._submit(order, stage=1, artifact_ref=order.primary_ref)
        except SubmissionError as e:
            logger.warning(f"Order {order.id}: every provider rejected submission: {e}")
            await self._finalize_failure(order, e.kind, e.user_message)
            return None

        await self.store.save_jobs(jobs)
        task = self.scheduler.spawn(self._monitor_order(order, jobs), name=f"order:{order.id}")
        self._live[order.id] = task
        metrics.set_gauge("sessions.live", len(self._live))
        return task

    # ── Monitoring ───────────────────────────────────────────────────────────

    async def _run_session(self, order: Order, jobs: list[GenerationJob], stage: int) -> Aggregate:
        title = (
            "🎨 Combining your photos..."
            if order.kind == OrderKind.COMBINE_AND_ANIMATE and stage == 1
            else "🔄 Processing your video..."
        )
        reporter = ProgressReporter(self.notifier, order.owner_ref, title=title)
        self._reporters[order.id] = reporter

        session = MonitoringSession(
            order.id,
            jobs,
            factory=self.factory,
            store=self.store,
            scheduler=self.scheduler,
            reporter=reporter,
            poll_interval=self.poll_interval,
            max_attempts=self.max_poll_attempts,
        )
        aggregate = await session.run()
        session.mark_notified()
        return aggregate

    async def _monitor_order(self, order: Order, jobs: list[GenerationJob]):
        try:
            aggregate = await self._run_session(order, jobs, stage=1)

            if order.kind == OrderKind.COMBINE_AND_ANIMATE:
                if not aggregate.succeeded:
                    kind, message = failure_reason(aggregate.jobs, aggregate.timed_out)
                    await self._finalize_failure(order, kind, message)
                    return

                combined_ref = aggregate.succeeded[0].result_ref
                logger.info(f"Order {order.id}: stage 1 combined → {combined_ref}, starting animation")
                try:
                    stage2_jobs = await self._submit(order, stage=2, artifact_ref=combined_ref)
                except SubmissionError as e:
                    await self._finalize_failure(order, e.kind, e.user_message)
                    return
                await self.store.save_jobs(stage2_jobs)
                aggregate = await self._run_session(order, stage2_jobs, stage=2)

            if aggregate.succeeded:
                await self._finalize_success(order, aggregate)
            else:
                kind, message = failure_reason(aggregate.jobs, aggregate.timed_out)
                await self._finalize_failure(order, kind, message)
        finally:
            self._live.pop(order.id, None)
            self._reporters.pop(order.id, None)
            metrics.set_gauge("sessions.live", len(self._live))

    # ── Finalization ─────────────────────────────────────────────────────────

    async def _finalize_success(self, order: Order, aggregate: Aggregate) -> bool:
        if not await self.store.update_status(order.id, OrderStatus.COMPLETED, expected=OrderStatus.PROCESSING):
            logger.warning(f"Order {order.id} was finalized elsewhere, not delivering")
            return False

        results = labeled_results(aggregate.succeeded)
        try:
            await self.store.update_result(order.id, [r.ref for r in results])
        except Exception as e:
            # Deliver anyway, the jobs still hold every result_ref
            logger.error(f"Order {order.id}: could not record results: {e}", exc_info=True)
            metrics.inc_counter("errors.update_result")
            metrics.record_error("update_result", type(e).__name__, str(e), order.id)

        balance = None
        if not await self.store.has_associated_payment(order.id):
            balance = await self.ledger.get_balance(order.owner_ref)

        await self._notify(order.owner_ref, format_results(results))
        await self._notify(order.owner_ref, format_next_photo_hint(balance))
        await self._clear_session(order.owner_ref)

        metrics.inc_counter("orders.completed")
        metrics.inc_counter("results.delivered", len(results))
        logger.info(f"Order {order.id} completed with {len(results)} result(s)")
        return True

    async def _finalize_failure(self, order: Order, kind: ErrorKind, message: str) -> bool:
        if not await self.store.update_status(order.id, OrderStatus.FAILED, expected=OrderStatus.PROCESSING):
            logger.warning(f"Order {order.id} was finalized elsewhere, skipping failure path")
            return False

        balance = None
        refunded = 0
        if not await self.store.has_associated_payment(order.id):
            refunded = await self.ledger.net_charge(order.owner_ref, order.id)
            if refunded > 0:
                await self.ledger.credit(order.owner_ref, refunded, order.id)
            balance = await self.ledger.get_balance(order.owner_ref)

        await self._notify(order.owner_ref, format_failure(message, balance, refunded))
        await self._clear_session(order.owner_ref)

        metrics.inc_counter("orders.failed")
        metrics.inc_counter(f"orders.failed.{kind.value}")
        logger.info(f"Order {order.id} failed ({kind.value}), refunded {refunded}")
        return True

    # ── Collaborators ────────────────────────────────────────────────────────

    async def _notify(self, owner_ref: str, text: str):
        try:
            await self.notifier.send(owner_ref, text)
        except Exception as e:
            logger.error(f"Could not notify {owner_ref}: {e}", exc_info=True)
            metrics.inc_counter("errors.notify")

    async def _clear_session(self, owner_ref: str):
        if self.sessions is None:
            return
        try:
            await self.sessions.clear(owner_ref)
        except Exception as e:
            logger.warning(f"Could not clear session for {owner_ref}: {e}")

    async def shutdown(self):
        await self.scheduler.shutdown()
