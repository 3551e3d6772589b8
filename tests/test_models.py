"""Tests for the order state machine and idempotent job updates."""

import pytest

from photoreel.pipeline.errors import IllegalTransitionError
from photoreel.pipeline.memory import InMemoryOrderStore
from photoreel.pipeline.models import (
    ErrorKind,
    GenerationJob,
    JobStatus,
    OrderStatus,
    PollResult,
    ProviderKind,
    can_transition,
)


@pytest.fixture
def job() -> GenerationJob:
    return GenerationJob(order_id="o1", provider=ProviderKind.MOCK, model="m", status=JobStatus.PROCESSING)


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.PROCESSING),
            (OrderStatus.PAYMENT_REQUIRED, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.THROTTLED),
            (OrderStatus.THROTTLED, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.COMPLETED),
            (OrderStatus.PROCESSING, OrderStatus.FAILED),
        ],
    )
    def test_legal_edges(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.COMPLETED),
            (OrderStatus.PENDING, OrderStatus.THROTTLED),
            (OrderStatus.THROTTLED, OrderStatus.FAILED),
            (OrderStatus.COMPLETED, OrderStatus.PROCESSING),
            (OrderStatus.FAILED, OrderStatus.PROCESSING),
            (OrderStatus.CANCELLED, OrderStatus.PROCESSING),
        ],
    )
    def test_illegal_edges(self, current, target):
        assert not can_transition(current, target)

    async def test_store_rejects_illegal_transition(self, make_order):
        store = InMemoryOrderStore([make_order("o1", status=OrderStatus.COMPLETED)])

        with pytest.raises(IllegalTransitionError):
            await store.update_status("o1", OrderStatus.PROCESSING)

    async def test_compare_and_set_refuses_stale_expectation(self, make_order):
        store = InMemoryOrderStore([make_order("o1", status=OrderStatus.PROCESSING)])

        assert await store.update_status("o1", OrderStatus.FAILED, expected=OrderStatus.PROCESSING)
        assert not await store.update_status("o1", OrderStatus.COMPLETED, expected=OrderStatus.PROCESSING)
        assert (await store.get_order("o1")).status == OrderStatus.FAILED


class TestJobApply:
    def test_completion_sets_result(self, job):
        changed = job.apply(PollResult(status=JobStatus.COMPLETED, result_ref="https://v/1.mp4"))

        assert changed
        assert job.status == JobStatus.COMPLETED
        assert job.result_ref == "https://v/1.mp4"
        assert job.native_progress == 1.0

    def test_terminal_job_never_changes(self, job):
        job.apply(PollResult(status=JobStatus.COMPLETED, result_ref="https://v/1.mp4"))

        assert not job.apply(PollResult(status=JobStatus.FAILED, error_raw="late failure"))
        assert not job.apply(PollResult(status=JobStatus.COMPLETED, result_ref="https://v/2.mp4"))
        assert job.result_ref == "https://v/1.mp4"
        assert job.error_kind is None

    def test_repeated_processing_update_is_a_no_op(self, job):
        assert job.apply(PollResult(status=JobStatus.PROCESSING, native_progress=0.4))
        assert not job.apply(PollResult(status=JobStatus.PROCESSING, native_progress=0.4))

    def test_native_progress_is_clamped(self, job):
        job.apply(PollResult(status=JobStatus.PROCESSING, native_progress=3.0))
        assert job.native_progress == 1.0

    def test_fail_records_kind_and_raw(self, job):
        assert job.fail(ErrorKind.FILE_UNAVAILABLE, "404 on download")
        assert job.error_kind == ErrorKind.FILE_UNAVAILABLE
        assert job.error_raw == "404 on download"
        assert job.is_terminal
