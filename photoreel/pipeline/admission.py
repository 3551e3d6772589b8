"""
Admission control under a fixed concurrency ceiling.

The number of `processing` orders is always re-read from the store, and the
count-then-transition step runs under a process-wide lock so two admissions
can never both see the last free slot.

A refused order is moved pending → processing → throttled inside that same
step, so only legal edges are ever used. A non-positive ceiling queues
everything.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from .. import metrics
from .models import Order, OrderStatus
from .store import OrderStore

logger = logging.getLogger(__name__)


class AdmissionOutcome(str, Enum):
    ADMITTED = "admitted"
    THROTTLED = "throttled"
    SKIPPED = "skipped"


class AdmissionController:
    def __init__(self, store: OrderStore, ceiling: int):
        self.store = store
        self.ceiling = ceiling
        self._lock = asyncio.Lock()

    async def admit(self, order: Order) -> AdmissionOutcome:
        async with self._lock:
            processing = await self.store.count_by_status(OrderStatus.PROCESSING)

            if not await self.store.update_status(order.id, OrderStatus.PROCESSING, expected=order.status):
                return AdmissionOutcome.SKIPPED

            if processing >= self.ceiling:
                await self.store.update_status(order.id, OrderStatus.THROTTLED, expected=OrderStatus.PROCESSING)
                order.status = OrderStatus.THROTTLED
                metrics.inc_counter("orders.throttled")
                logger.info(f"Order {order.id} throttled ({processing}/{self.ceiling} slots busy)")
                return AdmissionOutcome.THROTTLED

            order.status = OrderStatus.PROCESSING
            metrics.inc_counter("orders.admitted")
            metrics.set_gauge("orders.processing", processing + 1)
            logger.info(f"Order {order.id} admitted ({processing + 1}/{self.ceiling} slots busy)")
            return AdmissionOutcome.ADMITTED

    async def select_throttled(self) -> list[Order]:
        """Promote as many throttled orders as there are free slots, oldest first."""
        async with self._lock:
            processing = await self.store.count_by_status(OrderStatus.PROCESSING)
            free = self.ceiling - processing
            if free <= 0:
                return []

            waiting = await self.store.get_orders_by_status(OrderStatus.THROTTLED)
            promoted: list[Order] = []
            for order in waiting[:free]:
                if await self.store.update_status(order.id, OrderStatus.PROCESSING, expected=OrderStatus.THROTTLED):
                    order.status = OrderStatus.PROCESSING
                    promoted.append(order)

            if promoted:
                metrics.inc_counter("orders.promoted", len(promoted))
                metrics.set_gauge("orders.processing", processing + len(promoted))
                logger.info(f"Promoted {len(promoted)} throttled order(s), {len(waiting) - len(promoted)} still waiting")
            return promoted

    async def queue_position(self, order_id: str) -> Optional[int]:
        """1-based FIFO position of a throttled order, None if it is not queued."""
        waiting = await self.store.get_orders_by_status(OrderStatus.THROTTLED)
        for position, order in enumerate(waiting, start=1):
            if order.id == order_id:
                return position
        return None
