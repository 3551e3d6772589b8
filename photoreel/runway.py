"""
RunwayML image-to-video adapter (single channel).

  POST /v1/image_to_video  → { id }
  GET  /v1/tasks/{id}      → { status, progress, output: [url], failure }

Runway reports native progress in [0, 1] while a task is RUNNING.
"""

import logging
import os
import random
from typing import Optional

import httpx

from .pipeline.adapters import SingleChannelAdapter
from .pipeline.errors import SubmissionError, TransientProviderError
from .pipeline.models import GenerationJob, JobStatus, PollResult, ProviderKind
from .retry import request_with_backoff

logger = logging.getLogger(__name__)

RUNWAY_API_BASE = "https://api.dev.runwayml.com/v1"
RUNWAY_API_VERSION = "2024-11-06"
DEFAULT_MODEL = "gen4_turbo"
DEFAULT_DURATION = 5
DEFAULT_RATIO = "960:960"
DEFAULT_PROMPT = "animate this image with subtle movements and breathing effect"

# Runway task status → internal job status
STATUS_MAP = {
    "PENDING": JobStatus.PROCESSING,
    "THROTTLED": JobStatus.PROCESSING,
    "RUNNING": JobStatus.PROCESSING,
    "SUCCEEDED": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "CANCELLED": JobStatus.FAILED,
}


def _extract_error(data) -> str:
    """Pull the human-readable error out of a Runway error body."""
    if isinstance(data, dict):
        for key in ("error", "failure", "message"):
            val = data.get(key)
            if isinstance(val, str) and val:
                return val
        issues = data.get("issues")
        if isinstance(issues, list) and issues:
            first = issues[0]
            if isinstance(first, dict) and first.get("message"):
                return first["message"]
    return str(data)


class RunwayAdapter(SingleChannelAdapter):
    kind = ProviderKind.RUNWAY

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        base_url: str = RUNWAY_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or os.environ.get("RUNWAY_API_KEY", "")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Runway-Version": RUNWAY_API_VERSION,
        }

    async def submit_one(
        self,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str],
        stage: int,
    ) -> GenerationJob:
        if secondary_ref:
            prompt_image = [
                {"uri": artifact_ref, "position": "first"},
                {"uri": secondary_ref, "position": "last"},
            ]
        else:
            prompt_image = artifact_ref

        payload = {
            "promptImage": prompt_image,
            "seed": random.randint(0, 999_999),
            "model": self.model,
            "promptText": prompt or DEFAULT_PROMPT,
            "duration": DEFAULT_DURATION,
            "ratio": DEFAULT_RATIO,
            "contentModeration": {"publicFigureThreshold": "auto"},
        }

        logger.info(f"Runway request for order {order_id}: model={self.model}, images={2 if secondary_ref else 1}")

        response = await request_with_backoff(
            self._client, "POST", f"{self.base_url}/image_to_video",
            headers=self._headers(), json=payload,
        )
        data = _safe_json(response)

        if response.status_code >= 400:
            raw = _extract_error(data)
            raise SubmissionError(self.translate_error(raw), raw)

        task_id = data.get("id") or data.get("generationId")
        if not task_id:
            raise SubmissionError(self.translate_error(None), f"No task id in Runway response: {data}")

        logger.info(f"Runway task started: {task_id} (order {order_id})")
        return GenerationJob(
            order_id=order_id,
            provider=self.kind,
            handle=task_id,
            model=self.model,
            stage=stage,
            status=JobStatus.PROCESSING,
        )

    async def poll(self, job: GenerationJob) -> PollResult:
        response = await request_with_backoff(
            self._client, "GET", f"{self.base_url}/tasks/{job.handle}",
            headers=self._headers(),
        )
        data = _safe_json(response)

        if response.status_code >= 500:
            raise TransientProviderError(
                f"Runway task {job.handle} returned HTTP {response.status_code}: {_extract_error(data)}"
            )
        if response.status_code >= 400:
            # A 4xx on the task itself means the task is gone or was rejected
            return PollResult(status=JobStatus.FAILED, error_raw=_extract_error(data))

        raw_status = str(data.get("status", "")).upper()
        status = STATUS_MAP.get(raw_status, JobStatus.PROCESSING)

        if status == JobStatus.COMPLETED:
            output = data.get("output") or []
            video_url = output[0] if isinstance(output, list) and output else None
            if not video_url:
                return PollResult(
                    status=JobStatus.FAILED,
                    error_raw=f"Completed but no video URL found: {data}",
                )
            return PollResult(status=status, result_ref=video_url)

        if status == JobStatus.FAILED:
            return PollResult(
                status=status,
                error_raw=data.get("failure") or data.get("error") or "Job failed",
            )

        progress = data.get("progress")
        return PollResult(
            status=status,
            native_progress=float(progress) if isinstance(progress, (int, float)) else None,
        )

    async def aclose(self):
        await self._client.aclose()


def _safe_json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {"error": response.text[:500]}
    return data if isinstance(data, dict) else {"data": data}
