"""
Pydantic models and enums for order processing and job orchestration.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_ANIMATION_PROMPT = "everyone in the photo is waving hand, subtle movements and breathing effect"
COMBINE_PROMPT = (
    "combine two reference images into one modern scene, drawing a new scene from scratch "
    "to create a cohesive common frame, merge the people from both images naturally into one composition"
)


# ── Order ────────────────────────────────────────────────────────────────────

class OrderStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_REQUIRED = "payment_required"
    PROCESSING = "processing"
    THROTTLED = "throttled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OrderKind(str, Enum):
    SINGLE = "single"
    MERGE = "merge"
    COMBINE_AND_ANIMATE = "combine_and_animate"


# Legal edges of the order state machine. Anything not listed is rejected.
LEGAL_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PAYMENT_REQUIRED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.THROTTLED,
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
    }),
    OrderStatus.THROTTLED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

STARTABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAYMENT_REQUIRED})
TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in LEGAL_TRANSITIONS.get(current, frozenset())


class Order(BaseModel):
    id: str
    owner_ref: str
    status: OrderStatus = OrderStatus.PENDING
    kind: OrderKind = OrderKind.SINGLE
    primary_ref: str
    secondary_ref: Optional[str] = None
    prompt: Optional[str] = None
    result_refs: list[str] = Field(default_factory=list)
    job_ids: list[str] = Field(default_factory=list)
    payment_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


# ── Generation Job ───────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class ProviderKind(str, Enum):
    RUNWAY = "runway"
    FAL = "fal"
    FAL_IMAGE = "fal_image"
    MOCK = "mock"


class ErrorKind(str, Enum):
    FILE_UNAVAILABLE = "FILE_UNAVAILABLE"
    IMAGE_TOO_SMALL = "IMAGE_TOO_SMALL"
    CONTENT_MODERATION_REJECTED = "CONTENT_MODERATION_REJECTED"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    INVALID_ASPECT_RATIO = "INVALID_ASPECT_RATIO"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    UNKNOWN = "UNKNOWN"


class PollResult(BaseModel):
    """Normalized answer of a provider status check."""
    status: JobStatus
    result_ref: Optional[str] = None
    native_progress: Optional[float] = None
    error_raw: Optional[str] = None


class GenerationJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    order_id: str
    provider: ProviderKind
    handle: Optional[str] = None
    model: str
    stage: int = 1
    status: JobStatus = JobStatus.PENDING
    result_ref: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_raw: Optional[str] = None
    native_progress: Optional[float] = None
    orphaned: bool = False
    meta: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def apply(self, result: PollResult, error_kind: Optional[ErrorKind] = None) -> bool:
        """
        Fold a poll result into this job.

        Terminal jobs never change again; returns True only when something
        observable (status, result, progress) moved.
        """
        if self.is_terminal:
            return False

        before = (self.status, self.result_ref, self.native_progress)

        if result.status == JobStatus.COMPLETED:
            self.status = JobStatus.COMPLETED
            self.result_ref = result.result_ref
            self.native_progress = 1.0
        elif result.status == JobStatus.FAILED:
            self.status = JobStatus.FAILED
            self.error_raw = result.error_raw
            self.error_kind = error_kind or ErrorKind.UNKNOWN
        else:
            self.status = JobStatus.PROCESSING
            if result.native_progress is not None:
                self.native_progress = min(max(result.native_progress, 0.0), 1.0)

        return before != (self.status, self.result_ref, self.native_progress)

    def fail(self, kind: ErrorKind, raw: Optional[str] = None) -> bool:
        return self.apply(PollResult(status=JobStatus.FAILED, error_raw=raw), kind)


# ── Results ──────────────────────────────────────────────────────────────────

class LabeledResult(BaseModel):
    label: str
    ref: str


class SessionState(str, Enum):
    RUNNING = "RUNNING"
    AGGREGATED = "AGGREGATED"
    NOTIFIED = "NOTIFIED"


# ── API Models ───────────────────────────────────────────────────────────────

class ProcessOrderRequest(BaseModel):
    order_id: str


class JobView(BaseModel):
    id: str
    provider: ProviderKind
    model: str
    stage: int
    status: JobStatus
    result_ref: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    orphaned: bool = False


class OrderStatusResponse(BaseModel):
    order_id: str
    status: OrderStatus
    kind: OrderKind
    result_refs: list[str] = Field(default_factory=list)
    jobs: list[JobView] = Field(default_factory=list)
    queue_position: Optional[int] = None
    progress_pct: Optional[int] = None
