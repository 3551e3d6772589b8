"""
Order Store: durable record of orders and their generation jobs.

Backed by Supabase tables `orders`, `generation_jobs` and `payments`.
supabase-py is synchronous, so every call runs in a worker thread.

Status changes are compare-and-set: the update only lands if the row still
holds the expected status, which is what makes terminal transitions (and
the refund that follows them) happen at most once.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Optional, Protocol

from supabase import Client, create_client

from .errors import IllegalTransitionError, OrderNotFoundError
from .models import GenerationJob, Order, OrderStatus, can_transition

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    async def get_order(self, order_id: str) -> Order: ...

    async def update_status(
        self, order_id: str, status: OrderStatus, expected: Optional[OrderStatus] = None
    ) -> bool: ...

    async def update_result(self, order_id: str, result_refs: list[str]) -> None: ...

    async def get_orders_by_status(self, status: OrderStatus) -> list[Order]: ...

    async def count_by_status(self, status: OrderStatus) -> int: ...

    async def has_associated_payment(self, order_id: str) -> bool: ...

    async def save_jobs(self, jobs: list[GenerationJob]) -> None: ...

    async def update_job(self, job: GenerationJob) -> None: ...

    async def get_jobs(self, order_id: str) -> list[GenerationJob]: ...


def check_transition(order_id: str, current: OrderStatus, target: OrderStatus):
    if not can_transition(current, target):
        raise IllegalTransitionError(
            f"Order {order_id}: {current.value} → {target.value} is not a legal transition"
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_order(row: dict, job_ids: Optional[list[str]] = None) -> Order:
    return Order(
        id=row["id"],
        owner_ref=str(row["owner_ref"]),
        status=row.get("status", OrderStatus.PENDING.value),
        kind=row.get("kind") or "single",
        primary_ref=row["primary_ref"],
        secondary_ref=row.get("secondary_ref"),
        prompt=row.get("prompt"),
        result_refs=row.get("result_refs") or [],
        job_ids=job_ids or [],
        payment_id=row.get("payment_id"),
        created_at=row["created_at"],
        updated_at=row.get("updated_at") or row["created_at"],
    )


def _job_to_row(job: GenerationJob) -> dict:
    return job.model_dump(mode="json")


# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using the service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


class SupabaseOrderStore:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    async def _run(self, fn):
        return await asyncio.to_thread(fn)

    async def get_order(self, order_id: str) -> Order:
        result = await self._run(
            lambda: self.sb.table("orders").select("*").eq("id", order_id).limit(1).execute()
        )
        if not result.data:
            raise OrderNotFoundError(f"Order {order_id} not found")
        jobs = await self.get_jobs(order_id)
        return _row_to_order(result.data[0], [j.id for j in jobs])

    async def update_status(
        self, order_id: str, status: OrderStatus, expected: Optional[OrderStatus] = None
    ) -> bool:
        if expected is None:
            expected = (await self.get_order(order_id)).status
        check_transition(order_id, expected, status)

        result = await self._run(
            lambda: self.sb.table("orders")
            .update({"status": status.value, "updated_at": _now_iso()})
            .eq("id", order_id)
            .eq("status", expected.value)
            .execute()
        )
        applied = bool(result.data)
        if applied:
            logger.info(f"Order {order_id}: {expected.value} → {status.value}")
        else:
            logger.info(f"Order {order_id}: {expected.value} → {status.value} lost the race, skipped")
        return applied

    async def update_result(self, order_id: str, result_refs: list[str]) -> None:
        await self._run(
            lambda: self.sb.table("orders")
            .update({"result_refs": list(result_refs), "updated_at": _now_iso()})
            .eq("id", order_id)
            .execute()
        )

    async def get_orders_by_status(self, status: OrderStatus) -> list[Order]:
        result = await self._run(
            lambda: self.sb.table("orders")
            .select("*")
            .eq("status", status.value)
            .order("created_at")
            .execute()
        )
        return [_row_to_order(row) for row in result.data or []]

    async def count_by_status(self, status: OrderStatus) -> int:
        result = await self._run(
            lambda: self.sb.table("orders")
            .select("id", count="exact")
            .eq("status", status.value)
            .execute()
        )
        return result.count or 0

    async def has_associated_payment(self, order_id: str) -> bool:
        order = await self.get_order(order_id)
        if order.payment_id:
            return True
        result = await self._run(
            lambda: self.sb.table("payments").select("id").eq("order_id", order_id).limit(1).execute()
        )
        return bool(result.data)

    async def save_jobs(self, jobs: list[GenerationJob]) -> None:
        if not jobs:
            return
        rows = [_job_to_row(job) for job in jobs]
        await self._run(lambda: self.sb.table("generation_jobs").upsert(rows).execute())

    async def update_job(self, job: GenerationJob) -> None:
        row = _job_to_row(job)
        await self._run(
            lambda: self.sb.table("generation_jobs").update(row).eq("id", job.id).execute()
        )

    async def get_jobs(self, order_id: str) -> list[GenerationJob]:
        result = await self._run(
            lambda: self.sb.table("generation_jobs")
            .select("*")
            .eq("order_id", order_id)
            .order("created_at")
            .execute()
        )
        return [GenerationJob(**row) for row in result.data or []]
