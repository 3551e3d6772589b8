"""
fal.ai integration via the queue REST API.

  POST {base}/{endpoint}                      → { request_id, status_url, response_url }
  GET  status_url                             → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  response_url                           → result payload (video.url / images[0].url)

Some endpoints answer the submit call with the finished payload directly;
those jobs are created already completed.

Two adapters:
  - FalVideoAdapter: fans one animation request out to several video models.
  - FalImageAdapter: combines two photos into one still (stage 1 of
    combine-and-animate).
"""

import logging
import os
from typing import Optional

import httpx

from .pipeline.adapters import FanOutAdapter, SingleChannelAdapter
from .pipeline.errors import SubmissionError, TransientProviderError
from .pipeline.models import (
    COMBINE_PROMPT,
    DEFAULT_ANIMATION_PROMPT,
    GenerationJob,
    JobStatus,
    PollResult,
    ProviderKind,
)
from .retry import request_with_backoff

logger = logging.getLogger(__name__)

FAL_QUEUE_BASE = "https://queue.fal.run"

# Model label → fal endpoint
VIDEO_MODEL_ENDPOINTS = {
    "hailuo-2.3-fast": "fal-ai/minimax/hailuo-2.3-fast/standard/image-to-video",
    "kling-2.5-turbo": "fal-ai/kling-video/v2.5-turbo/pro/image-to-video",
    "seedance-1-pro": "fal-ai/bytedance/seedance/v1/pro/image-to-video",
    "wan-2.5": "fal-ai/wan-25-preview/image-to-video",
}

# Per-model request tweaks: clip duration and the field that takes a last frame
VIDEO_MODEL_OPTIONS = {
    "hailuo-2.3-fast": {"duration": "6", "tail_field": "end_image_url", "prompt_optimizer": True},
    "kling-2.5-turbo": {"duration": "5", "tail_field": "tail_image_url"},
    "seedance-1-pro": {"duration": "5", "tail_field": "end_image_url"},
    "wan-2.5": {"duration": "5", "tail_field": "end_image_url"},
}

DEFAULT_VIDEO_MODELS = list(VIDEO_MODEL_ENDPOINTS)

COMBINE_MODEL = "flux-kontext-multi"
COMBINE_ENDPOINT = "fal-ai/flux-pro/kontext/max/multi"

# fal queue status → internal job status
STATUS_MAP = {
    "IN_QUEUE": JobStatus.PROCESSING,
    "IN_PROGRESS": JobStatus.PROCESSING,
    "COMPLETED": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "ERROR": JobStatus.FAILED,
}


def _extract_error(data) -> str:
    """
    Extract the error message from the various fal.ai error shapes:
    detail as a list of {msg}, detail as a string, detail as {msg}, or error.
    """
    if not isinstance(data, dict):
        return str(data)

    detail = data.get("detail")
    if isinstance(detail, list) and detail:
        first = detail[0]
        if isinstance(first, dict) and first.get("msg"):
            return first["msg"]
        if isinstance(first, str):
            return first
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(data.get("error"), str) and data["error"]:
        return data["error"]
    if isinstance(detail, dict) and detail.get("msg"):
        return detail["msg"]
    return str(data)


def _extract_output_url(data: dict) -> Optional[str]:
    """Find the produced artifact in a fal result payload."""
    video = data.get("video")
    if isinstance(video, dict) and video.get("url"):
        return video["url"]
    images = data.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, dict) and first.get("url"):
            return first["url"]
    image = data.get("image")
    if isinstance(image, dict) and image.get("url"):
        return image["url"]
    return None


def _safe_json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {"error": response.text[:500]}
    return data if isinstance(data, dict) else {"data": data}


class _FalQueueClient:
    """Submit/poll mechanics shared by both fal adapters."""

    kind: ProviderKind

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = FAL_QUEUE_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or os.environ.get("FAL_KEY", "")
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=60)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _submit_endpoint(
        self,
        model: str,
        endpoint: str,
        payload: dict,
        order_id: str,
        stage: int,
    ) -> GenerationJob:
        logger.info(f"[fal] Submitting order {order_id} to {endpoint}...")

        response = await request_with_backoff(
            self._client, "POST", f"{self.base_url}/{endpoint}",
            headers=self._headers(), json=payload,
        )
        data = _safe_json(response)

        if response.status_code >= 400:
            raw = _extract_error(data)
            raise SubmissionError(self.translate_error(raw), raw)

        job = GenerationJob(order_id=order_id, provider=self.kind, model=model, stage=stage)

        output_url = _extract_output_url(data)
        if output_url:
            # Synchronous response, already done
            job.status = JobStatus.COMPLETED
            job.result_ref = output_url
            job.native_progress = 1.0
            job.meta = {"sync": True}
            logger.info(f"[fal] {model} answered synchronously for order {order_id}")
            return job

        request_id = data.get("request_id")
        if not request_id:
            raise SubmissionError(
                self.translate_error(None),
                f"Unexpected response format from fal.ai: {data}",
            )

        job.handle = request_id
        job.status = JobStatus.PROCESSING
        job.meta = {
            "endpoint": endpoint,
            "status_url": data.get("status_url") or f"{self.base_url}/{endpoint}/requests/{request_id}/status",
            "response_url": data.get("response_url") or f"{self.base_url}/{endpoint}/requests/{request_id}",
        }
        logger.info(f"[fal] Queued {model}: request_id={request_id}")
        return job

    async def poll(self, job: GenerationJob) -> PollResult:
        if job.meta.get("sync"):
            return PollResult(status=job.status, result_ref=job.result_ref, error_raw=job.error_raw)

        status_resp = await request_with_backoff(
            self._client, "GET", job.meta["status_url"], headers=self._headers(),
        )
        status_data = _safe_json(status_resp)

        if status_resp.status_code >= 500:
            raise TransientProviderError(
                f"fal status check for {job.handle} returned HTTP {status_resp.status_code}: "
                f"{_extract_error(status_data)}"
            )
        if status_resp.status_code >= 400:
            return PollResult(status=JobStatus.FAILED, error_raw=_extract_error(status_data))

        raw_status = str(status_data.get("status", "")).upper()
        status = STATUS_MAP.get(raw_status, JobStatus.PROCESSING)

        if status == JobStatus.FAILED:
            return PollResult(status=status, error_raw=_extract_error(status_data))

        if status == JobStatus.PROCESSING:
            return PollResult(status=status)

        # COMPLETED: fetch the payload, failures surface here as error bodies
        result_resp = await request_with_backoff(
            self._client, "GET", job.meta["response_url"], headers=self._headers(),
        )
        result = _safe_json(result_resp)

        if result_resp.status_code >= 500:
            raise TransientProviderError(
                f"fal result fetch for {job.handle} returned HTTP {result_resp.status_code}: "
                f"{_extract_error(result)}"
            )
        if result_resp.status_code >= 400 or result.get("error") or result.get("detail"):
            return PollResult(status=JobStatus.FAILED, error_raw=_extract_error(result))

        output_url = _extract_output_url(result)
        if not output_url:
            return PollResult(status=JobStatus.FAILED, error_raw=f"Completed but no output URL: {result}")

        logger.info(f"[fal] Completed: request_id={job.handle}")
        return PollResult(status=JobStatus.COMPLETED, result_ref=output_url)

    async def aclose(self):
        await self._client.aclose()


class FalVideoAdapter(_FalQueueClient, FanOutAdapter):
    kind = ProviderKind.FAL

    def __init__(self, models: Optional[list[str]] = None, **kwargs):
        super().__init__(**kwargs)
        self.models = list(models or DEFAULT_VIDEO_MODELS)
        unknown = [m for m in self.models if m not in VIDEO_MODEL_ENDPOINTS]
        if unknown:
            raise ValueError(f"Unknown fal video model(s): {unknown}. Available: {list(VIDEO_MODEL_ENDPOINTS)}")

    async def submit_model(
        self,
        model: str,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str],
        stage: int,
    ) -> GenerationJob:
        options = VIDEO_MODEL_OPTIONS.get(model, {})
        payload = {
            "prompt": prompt or DEFAULT_ANIMATION_PROMPT,
            "image_url": artifact_ref,
            "duration": options.get("duration", "5"),
        }
        if options.get("prompt_optimizer"):
            payload["prompt_optimizer"] = True
        if secondary_ref and options.get("tail_field"):
            payload[options["tail_field"]] = secondary_ref

        return await self._submit_endpoint(model, VIDEO_MODEL_ENDPOINTS[model], payload, order_id, stage)


class FalImageAdapter(_FalQueueClient, SingleChannelAdapter):
    kind = ProviderKind.FAL_IMAGE
    model = COMBINE_MODEL

    async def submit_one(
        self,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str],
        stage: int,
    ) -> GenerationJob:
        image_urls = [artifact_ref] + ([secondary_ref] if secondary_ref else [])
        payload = {
            "prompt": prompt or COMBINE_PROMPT,
            "image_urls": image_urls,
            "num_images": 1,
            "output_format": "jpeg",
            "enable_safety_checker": True,
        }
        return await self._submit_endpoint(self.model, COMBINE_ENDPOINT, payload, order_id, stage)
