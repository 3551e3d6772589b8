"""Pytest fixtures for the order engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from photoreel import metrics
from photoreel.mock_provider import MockAdapter
from photoreel.pipeline.memory import InMemoryCreditLedger, InMemoryOrderStore
from photoreel.pipeline.models import Order, OrderKind, OrderStatus, ProviderKind
from photoreel.pipeline.orchestrator import JobOrchestrator
from photoreel.pipeline.scheduler import TaskScheduler
from photoreel.provider_factory import ProviderFactory
from photoreel.sessions import SessionTable

OWNER = "owner-1"
BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


async def instant_sleep(_delay: float):
    """Yield to the loop without waiting."""
    await asyncio.sleep(0)


class RecordingNotifier:
    """Notifier double that keeps every message."""

    def __init__(self, fail_edits: bool = False):
        self.fail_edits = fail_edits
        self.sent: list[tuple[str, str]] = []
        self.edits: list[tuple[str, str, str]] = []
        self._next_id = 0

    async def send(self, owner_ref: str, text: str) -> Optional[str]:
        self._next_id += 1
        self.sent.append((owner_ref, text))
        return str(self._next_id)

    async def edit_progress(self, owner_ref: str, message_ref: str, text: str) -> None:
        if self.fail_edits:
            raise RuntimeError("message to edit not found")
        self.edits.append((owner_ref, message_ref, text))

    def texts(self, owner_ref: str = OWNER) -> list[str]:
        return [text for owner, text in self.sent if owner == owner_ref]

    def non_progress_texts(self, owner_ref: str = OWNER) -> list[str]:
        return [t for t in self.texts(owner_ref) if "%" not in t]

    async def aclose(self):
        pass


def _make_order(
    order_id: str,
    status: OrderStatus = OrderStatus.PENDING,
    kind: OrderKind = OrderKind.SINGLE,
    owner_ref: str = OWNER,
    minutes_ago: int = 0,
    created_at: Optional[datetime] = None,
    secondary_ref: Optional[str] = None,
    payment_id: Optional[str] = None,
    prompt: Optional[str] = "make them dance",
) -> Order:
    created = created_at or BASE_TIME - timedelta(minutes=minutes_ago)
    return Order(
        id=order_id,
        owner_ref=owner_ref,
        status=status,
        kind=kind,
        primary_ref=f"https://files.example/{order_id}/photo.jpg",
        secondary_ref=secondary_ref,
        prompt=prompt,
        payment_id=payment_id,
        created_at=created,
        updated_at=created,
    )


@pytest.fixture
def make_order():
    return _make_order


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger({OWNER: 5})


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def scheduler() -> TaskScheduler:
    return TaskScheduler(sleep=instant_sleep)


@pytest.fixture
def sessions() -> SessionTable:
    return SessionTable()


@pytest.fixture
def animation() -> MockAdapter:
    return MockAdapter(models=["model-a", "model-b"])


@pytest.fixture
def combine() -> MockAdapter:
    return MockAdapter(models=["combiner"], kind=ProviderKind.FAL_IMAGE)


@pytest.fixture
def factory(animation, combine) -> ProviderFactory:
    return ProviderFactory(
        {ProviderKind.MOCK: animation, ProviderKind.FAL_IMAGE: combine},
        animation_kind=ProviderKind.MOCK,
        combine_kind=ProviderKind.FAL_IMAGE,
    )


@pytest.fixture
def build_orchestrator(store, ledger, factory, notifier, scheduler, sessions):
    """Factory for orchestrators sharing the test collaborators."""

    def _build(**overrides) -> JobOrchestrator:
        params = dict(
            store=store,
            ledger=ledger,
            factory=factory,
            notifier=notifier,
            scheduler=scheduler,
            sessions=sessions,
            max_concurrent_orders=3,
            poll_interval=5.0,
            max_poll_attempts=5,
            stale_order_minutes=30,
        )
        params.update(overrides)
        return JobOrchestrator(**params)

    return _build


@pytest.fixture
def orchestrator(build_orchestrator) -> JobOrchestrator:
    return build_orchestrator()
