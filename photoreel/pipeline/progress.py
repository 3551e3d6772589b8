"""
Progress estimation and reporting for a running monitoring session.

Per job: the provider's native progress when it reports one, otherwise an
estimate from elapsed attempts (capped below 100%). Overall progress is the
mean over jobs that are still processing. The reporter only notifies when
the rounded percentage actually changes and never moves backwards.
"""

import logging
from typing import Iterable, Optional

from .models import GenerationJob, JobStatus

logger = logging.getLogger(__name__)

BAR_WIDTH = 10
ESTIMATE_CAP = 0.95
REPORT_CAP_PCT = 99


def progress_bar(pct: int) -> str:
    pct = min(max(pct, 0), 100)
    filled = round(pct / 100 * BAR_WIDTH)
    return f"[{'█' * filled}{'░' * (BAR_WIDTH - filled)}]"


class ProgressEstimator:
    def __init__(self, expected_attempts: int):
        self.expected_attempts = max(expected_attempts, 1)

    def job_progress(self, job: GenerationJob, attempts: int) -> float:
        if job.native_progress is not None:
            return min(max(job.native_progress, 0.0), 1.0)
        return min(ESTIMATE_CAP, attempts / self.expected_attempts)

    def overall(self, jobs: Iterable[GenerationJob], attempts: int) -> Optional[float]:
        """Mean progress over processing jobs; None when nothing is processing."""
        values = [
            self.job_progress(job, attempts)
            for job in jobs
            if job.status == JobStatus.PROCESSING and not job.orphaned
        ]
        if not values:
            return None
        return sum(values) / len(values)


class ProgressReporter:
    """
    Sends the first progress message, then edits it in place.

    If an edit fails the reporter falls back to sending a fresh message and
    edits that one from then on. Progress messages are best effort: delivery
    failures are logged and never interrupt the monitoring session.
    """

    def __init__(self, notifier, owner_ref: str, title: str = "🔄 Processing your video..."):
        self.notifier = notifier
        self.owner_ref = owner_ref
        self.title = title
        self.message_ref: Optional[str] = None
        self.last_pct: Optional[int] = None
        self.history: list[int] = []

    def render(self, pct: int) -> str:
        return f"{self.title}\n\n{progress_bar(pct)} {pct}%"

    async def report(self, fraction: Optional[float]) -> bool:
        """Publish progress; returns True when a notification went out."""
        if fraction is None:
            return False

        pct = min(REPORT_CAP_PCT, max(0, round(fraction * 100)))
        if self.last_pct is not None:
            pct = max(pct, self.last_pct)
        if pct == self.last_pct:
            return False

        text = self.render(pct)
        if self.message_ref is not None:
            try:
                await self.notifier.edit_progress(self.owner_ref, self.message_ref, text)
            except Exception as e:
                logger.warning(f"Progress edit failed for {self.owner_ref}, sending new message: {e}")
                self.message_ref = None

        if self.message_ref is None:
            try:
                self.message_ref = await self.notifier.send(self.owner_ref, text)
            except Exception as e:
                logger.warning(f"Progress message failed for {self.owner_ref}: {e}")
                return False

        self.last_pct = pct
        self.history.append(pct)
        return True
