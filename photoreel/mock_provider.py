"""
Simulated fan-out provider for local runs and tests.

No network. Each configured model completes after a fixed number of polls
with a placeholder video URL, unless told to fail or to reject submission.
"""

import logging
from typing import Optional, Union

from .pipeline.adapters import FanOutAdapter
from .pipeline.errors import SubmissionError
from .pipeline.models import GenerationJob, JobStatus, PollResult, ProviderKind

logger = logging.getLogger(__name__)

DEFAULT_MOCK_MODELS = ["mock-fast", "mock-slow"]
PLACEHOLDER_VIDEO_URL = "https://commondatastorage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4"


class MockAdapter(FanOutAdapter):
    kind = ProviderKind.MOCK

    def __init__(
        self,
        models: Optional[list[str]] = None,
        polls_to_complete: Union[int, dict[str, int]] = 1,
        fail_models: Optional[dict[str, str]] = None,
        reject_models: Optional[dict[str, str]] = None,
        sync_models: Optional[set[str]] = None,
        report_progress: bool = False,
        kind: ProviderKind = ProviderKind.MOCK,
    ):
        self.kind = kind
        self.models = list(models or DEFAULT_MOCK_MODELS)
        self.polls_to_complete = polls_to_complete
        self.fail_models = fail_models or {}
        self.reject_models = reject_models or {}
        self.sync_models = sync_models or set()
        self.report_progress = report_progress

        self.submissions: list[dict] = []
        self.poll_calls: dict[str, int] = {}

    @property
    def submit_calls(self) -> int:
        return len(self.submissions)

    def _polls_needed(self, model: str) -> int:
        if isinstance(self.polls_to_complete, dict):
            return self.polls_to_complete.get(model, 1)
        return self.polls_to_complete

    async def submit_model(
        self,
        model: str,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str],
        stage: int,
    ) -> GenerationJob:
        self.submissions.append({
            "model": model,
            "order_id": order_id,
            "artifact_ref": artifact_ref,
            "prompt": prompt,
            "secondary_ref": secondary_ref,
            "stage": stage,
        })
        logger.info(f"[mock] Generation: model={model}, order={order_id}, secondary={bool(secondary_ref)}")

        if model in self.reject_models:
            raw = self.reject_models[model]
            raise SubmissionError(self.translate_error(raw), raw)

        job = GenerationJob(
            order_id=order_id,
            provider=self.kind,
            model=model,
            stage=stage,
            handle=f"mock_{model}_{order_id}_{stage}",
            status=JobStatus.PROCESSING,
        )
        if model in self.sync_models:
            job.status = JobStatus.COMPLETED
            job.result_ref = f"{PLACEHOLDER_VIDEO_URL}?model={model}"
            job.native_progress = 1.0
        return job

    async def poll(self, job: GenerationJob) -> PollResult:
        count = self.poll_calls.get(job.id, 0) + 1
        self.poll_calls[job.id] = count
        needed = self._polls_needed(job.model)

        if count < needed:
            progress = count / needed if self.report_progress else None
            return PollResult(status=JobStatus.PROCESSING, native_progress=progress)

        if job.model in self.fail_models:
            return PollResult(status=JobStatus.FAILED, error_raw=self.fail_models[job.model])

        return PollResult(
            status=JobStatus.COMPLETED,
            result_ref=f"{PLACEHOLDER_VIDEO_URL}?model={job.model}",
        )
