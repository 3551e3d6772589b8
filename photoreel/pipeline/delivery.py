"""
User-facing texts for delivery, failure and queueing.
"""

from typing import Iterable, Optional

from .models import GenerationJob, JobStatus, LabeledResult

INSUFFICIENT_CREDITS_MESSAGE = "You have no credits left. Top up your balance to animate this photo."


def labeled_results(jobs: Iterable[GenerationJob]) -> list[LabeledResult]:
    """Successful results in submission order, labeled by model."""
    return [
        LabeledResult(label=job.model, ref=job.result_ref)
        for job in jobs
        if job.status == JobStatus.COMPLETED and job.result_ref and not job.orphaned
    ]


def format_results(results: list[LabeledResult]) -> str:
    if len(results) == 1:
        return f"✅ Your video is ready!\n\n{results[0].ref}"

    lines = [f"✅ Your videos are ready! ({len(results)} versions)", ""]
    for i, result in enumerate(results, start=1):
        lines.append(f"{i}. {result.label}: {result.ref}")
    return "\n".join(lines)


def format_next_photo_hint(balance: Optional[int] = None) -> str:
    text = "📸 Send another photo whenever you want your next video."
    if balance is not None:
        text += f"\n\nCredits left: {balance}"
    return text


def format_failure(message: str, balance: Optional[int] = None, refunded: int = 0) -> str:
    text = f"❌ {message}"
    if refunded:
        text += f"\n\n{refunded} credit(s) returned to your balance."
    if balance is not None:
        text += f"\n\nCredits on your balance: {balance}"
    return text


def format_throttled(position: Optional[int]) -> str:
    where = f" (position {position})" if position else ""
    return (
        f"⏳ All generation slots are busy right now. Your order is in the queue{where} "
        "and will start automatically."
    )


def format_started_from_queue() -> str:
    return "🚀 A slot is free, your order is starting now."
