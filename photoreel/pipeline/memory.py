"""
In-process Order Store and Credit Ledger.

Used when Supabase is not configured (local runs) and by the test suite.
Same contract as the Supabase implementations, guarded by asyncio locks.
"""

import asyncio
import logging
from typing import Optional

from .errors import OrderNotFoundError
from .models import GenerationJob, Order, OrderStatus, _utcnow
from .store import check_transition

logger = logging.getLogger(__name__)


class InMemoryOrderStore:
    def __init__(self, orders: Optional[list[Order]] = None):
        self._orders: dict[str, Order] = {}
        self._jobs: dict[str, dict[str, GenerationJob]] = {}
        self._payments: set[str] = set()
        self._lock = asyncio.Lock()
        for order in orders or []:
            self.add_order(order)

    def add_order(self, order: Order):
        self._orders[order.id] = order.model_copy(deep=True)

    def add_payment(self, order_id: str):
        self._payments.add(order_id)

    async def get_order(self, order_id: str) -> Order:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            snapshot = order.model_copy(deep=True)
            snapshot.job_ids = list(self._jobs.get(order_id, {}))
            return snapshot

    async def update_status(
        self, order_id: str, status: OrderStatus, expected: Optional[OrderStatus] = None
    ) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            current = order.status
            check_transition(order_id, expected if expected is not None else current, status)
            if expected is not None and current != expected:
                logger.info(f"Order {order_id}: {expected.value} → {status.value} lost the race, skipped")
                return False
            order.status = status
            order.updated_at = _utcnow()
            logger.info(f"Order {order_id}: {current.value} → {status.value}")
            return True

    async def update_result(self, order_id: str, result_refs: list[str]) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            order.result_refs = list(result_refs)
            order.updated_at = _utcnow()

    async def get_orders_by_status(self, status: OrderStatus) -> list[Order]:
        async with self._lock:
            matching = [o.model_copy(deep=True) for o in self._orders.values() if o.status == status]
        return sorted(matching, key=lambda o: o.created_at)

    async def count_by_status(self, status: OrderStatus) -> int:
        async with self._lock:
            return sum(1 for o in self._orders.values() if o.status == status)

    async def has_associated_payment(self, order_id: str) -> bool:
        order = await self.get_order(order_id)
        return bool(order.payment_id) or order_id in self._payments

    async def save_jobs(self, jobs: list[GenerationJob]) -> None:
        async with self._lock:
            for job in jobs:
                self._jobs.setdefault(job.order_id, {})[job.id] = job.model_copy(deep=True)

    async def update_job(self, job: GenerationJob) -> None:
        async with self._lock:
            self._jobs.setdefault(job.order_id, {})[job.id] = job.model_copy(deep=True)

    async def get_jobs(self, order_id: str) -> list[GenerationJob]:
        async with self._lock:
            return [j.model_copy(deep=True) for j in self._jobs.get(order_id, {}).values()]


class InMemoryCreditLedger:
    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._balances: dict[str, int] = dict(balances or {})
        self.transactions: list[dict] = []
        self._lock = asyncio.Lock()

    async def get_balance(self, owner_ref: str) -> int:
        async with self._lock:
            return self._balances.get(owner_ref, 0)

    async def debit(self, owner_ref: str, amount: int, order_id: Optional[str] = None) -> bool:
        async with self._lock:
            balance = self._balances.get(owner_ref, 0)
            if balance < amount:
                return False
            self._balances[owner_ref] = balance - amount
            self.transactions.append({"owner_ref": owner_ref, "amount": -amount, "order_id": order_id})
            return True

    async def credit(self, owner_ref: str, amount: int, order_id: Optional[str] = None) -> None:
        async with self._lock:
            self._balances[owner_ref] = self._balances.get(owner_ref, 0) + amount
            self.transactions.append({"owner_ref": owner_ref, "amount": amount, "order_id": order_id})

    async def net_charge(self, owner_ref: str, order_id: str) -> int:
        async with self._lock:
            total = sum(
                t["amount"] for t in self.transactions
                if t["owner_ref"] == owner_ref and t["order_id"] == order_id
            )
        return max(0, -total)
