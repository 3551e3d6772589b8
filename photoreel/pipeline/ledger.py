"""
Credit Ledger: prepaid per-owner balance.

Balance lives in `profiles.credit_balance`; every movement is also written to
`credit_transactions` with the order it belongs to, so the net amount taken
for an order can be read back and refunded exactly.

Debit is a guarded compare-and-swap on the balance: it fails closed when the
balance is short and retries when another writer got there first.
"""

import asyncio
import logging
from typing import Optional, Protocol

from supabase import Client

from .store import get_service_client

logger = logging.getLogger(__name__)

MAX_CAS_RETRIES = 5


class CreditLedger(Protocol):
    async def get_balance(self, owner_ref: str) -> int: ...

    async def debit(self, owner_ref: str, amount: int, order_id: Optional[str] = None) -> bool: ...

    async def credit(self, owner_ref: str, amount: int, order_id: Optional[str] = None) -> None: ...

    async def net_charge(self, owner_ref: str, order_id: str) -> int: ...


class LedgerConflictError(RuntimeError):
    """Balance kept changing underneath us."""


class SupabaseCreditLedger:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    async def _run(self, fn):
        return await asyncio.to_thread(fn)

    async def get_balance(self, owner_ref: str) -> int:
        result = await self._run(
            lambda: self.sb.table("profiles").select("credit_balance").eq("id", owner_ref).limit(1).execute()
        )
        if not result.data:
            return 0
        return int(result.data[0].get("credit_balance") or 0)

    async def _swap(self, owner_ref: str, old: int, new: int) -> bool:
        result = await self._run(
            lambda: self.sb.table("profiles")
            .update({"credit_balance": new})
            .eq("id", owner_ref)
            .eq("credit_balance", old)
            .execute()
        )
        return bool(result.data)

    async def _record(self, owner_ref: str, amount: int, balance_after: int, reason: str, order_id: Optional[str]):
        await self._run(
            lambda: self.sb.table("credit_transactions").insert({
                "user_id": owner_ref,
                "amount": amount,
                "balance_after": balance_after,
                "reason": reason,
                "order_id": order_id,
            }).execute()
        )

    async def debit(self, owner_ref: str, amount: int, order_id: Optional[str] = None) -> bool:
        for _ in range(MAX_CAS_RETRIES):
            balance = await self.get_balance(owner_ref)
            if balance < amount:
                logger.info(f"Debit refused for {owner_ref}: balance {balance} < {amount}")
                return False
            if await self._swap(owner_ref, balance, balance - amount):
                await self._record(owner_ref, -amount, balance - amount, "generation", order_id)
                logger.info(f"Debited {amount} credit(s) from {owner_ref} (order {order_id}), balance {balance - amount}")
                return True
        raise LedgerConflictError(f"Debit for {owner_ref} kept conflicting")

    async def credit(self, owner_ref: str, amount: int, order_id: Optional[str] = None) -> None:
        for _ in range(MAX_CAS_RETRIES):
            balance = await self.get_balance(owner_ref)
            if await self._swap(owner_ref, balance, balance + amount):
                await self._record(owner_ref, amount, balance + amount, "refund", order_id)
                logger.info(f"Credited {amount} credit(s) to {owner_ref} (order {order_id}), balance {balance + amount}")
                return
        raise LedgerConflictError(f"Credit for {owner_ref} kept conflicting")

    async def net_charge(self, owner_ref: str, order_id: str) -> int:
        result = await self._run(
            lambda: self.sb.table("credit_transactions")
            .select("amount")
            .eq("user_id", owner_ref)
            .eq("order_id", order_id)
            .execute()
        )
        total = sum(int(row.get("amount") or 0) for row in result.data or [])
        return max(0, -total)
