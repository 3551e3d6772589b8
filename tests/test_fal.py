"""Tests for the fal.ai adapters over a mocked HTTP transport."""

import json

import httpx
import pytest

from photoreel.fal import FalImageAdapter, FalVideoAdapter, _extract_error
from photoreel.pipeline.errors import SubmissionError, TransientProviderError
from photoreel.pipeline.models import ErrorKind, JobStatus, ProviderKind

QUEUE = "https://queue.fal.run"


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def queued(endpoint: str, request_id: str) -> dict:
    return {
        "request_id": request_id,
        "status_url": f"{QUEUE}/{endpoint}/requests/{request_id}/status",
        "response_url": f"{QUEUE}/{endpoint}/requests/{request_id}",
    }


class TestExtractError:
    def test_detail_list(self):
        assert _extract_error({"detail": [{"msg": "Image too small", "loc": ["body"]}]}) == "Image too small"

    def test_detail_string(self):
        assert _extract_error({"detail": "Unsupported format"}) == "Unsupported format"

    def test_error_field(self):
        assert _extract_error({"error": "Failed to download"}) == "Failed to download"

    def test_detail_dict(self):
        assert _extract_error({"detail": {"msg": "content moderation"}}) == "content moderation"


class TestFalVideoSubmit:
    async def test_partial_rejection_keeps_accepted_models(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.append((request.url.path, body))
            assert request.headers["Authorization"] == "Key secret"
            if "kling" in request.url.path:
                return httpx.Response(422, json={"detail": [{"msg": "Image dimensions are too small"}]})
            return httpx.Response(200, json=queued("fal-ai/minimax/hailuo-2.3-fast/standard/image-to-video", "req-1"))

        adapter = FalVideoAdapter(
            models=["hailuo-2.3-fast", "kling-2.5-turbo"], api_key="secret", client=make_client(handler)
        )
        jobs = await adapter.submit("o1", "https://f/1.jpg", "wave", "https://f/2.jpg")

        assert [j.model for j in jobs] == ["hailuo-2.3-fast"]
        job = jobs[0]
        assert job.provider == ProviderKind.FAL
        assert job.handle == "req-1"
        assert job.status == JobStatus.PROCESSING
        assert job.meta["status_url"].endswith("/requests/req-1/status")
        hailuo_body = next(body for path, body in seen if "hailuo" in path)
        assert hailuo_body["image_url"] == "https://f/1.jpg"
        assert hailuo_body["end_image_url"] == "https://f/2.jpg"

    async def test_all_rejected_raises_first_translated_error(self):
        def handler(request):
            if "hailuo" in request.url.path:
                return httpx.Response(400, json={"detail": "Image dimensions are too small"})
            return httpx.Response(400, json={"detail": "Content moderation flagged the prompt"})

        adapter = FalVideoAdapter(models=["hailuo-2.3-fast", "wan-2.5"], api_key="k", client=make_client(handler))

        with pytest.raises(SubmissionError) as exc_info:
            await adapter.submit("o1", "https://f/1.jpg", "wave")

        assert exc_info.value.kind == ErrorKind.IMAGE_TOO_SMALL

    async def test_synchronous_result_creates_completed_job(self):
        def handler(request):
            return httpx.Response(200, json={"video": {"url": "https://cdn/v.mp4"}})

        adapter = FalVideoAdapter(models=["wan-2.5"], api_key="k", client=make_client(handler))
        [job] = await adapter.submit("o1", "https://f/1.jpg", "wave")

        assert job.status == JobStatus.COMPLETED
        assert job.result_ref == "https://cdn/v.mp4"
        assert (await adapter.poll(job)).result_ref == "https://cdn/v.mp4"

    def test_unknown_model_is_rejected_at_construction(self):
        with pytest.raises(ValueError):
            FalVideoAdapter(models=["not-a-model"], api_key="k")


class TestFalVideoPoll:
    async def _job(self, handler):
        adapter = FalVideoAdapter(models=["wan-2.5"], api_key="k", client=make_client(handler))
        [job] = await adapter.submit("o1", "https://f/1.jpg", "wave")
        return adapter, job

    async def test_in_progress(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=queued("fal-ai/wan-25-preview/image-to-video", "r1"))
            return httpx.Response(200, json={"status": "IN_PROGRESS"})

        adapter, job = await self._job(handler)
        result = await adapter.poll(job)

        assert result.status == JobStatus.PROCESSING

    async def test_completed_fetches_result(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=queued("fal-ai/wan-25-preview/image-to-video", "r1"))
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(200, json={"video": {"url": "https://cdn/out.mp4"}})

        adapter, job = await self._job(handler)
        result = await adapter.poll(job)

        assert result.status == JobStatus.COMPLETED
        assert result.result_ref == "https://cdn/out.mp4"

    async def test_completed_with_error_body_is_a_failure(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=queued("fal-ai/wan-25-preview/image-to-video", "r1"))
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(422, json={"detail": [{"msg": "Failed to download the file"}]})

        adapter, job = await self._job(handler)
        result = await adapter.poll(job)

        assert result.status == JobStatus.FAILED
        assert adapter.translate_error(result.error_raw) == ErrorKind.FILE_UNAVAILABLE

    async def test_gateway_errors_become_transient_after_retries(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=queued("fal-ai/wan-25-preview/image-to-video", "r1"))
            return httpx.Response(503, headers={"Retry-After": "0"})

        adapter, job = await self._job(handler)

        with pytest.raises(TransientProviderError):
            await adapter.poll(job)

    async def test_server_error_on_status_is_retried_later(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=queued("fal-ai/wan-25-preview/image-to-video", "r1"))
            return httpx.Response(500, json={"detail": "Internal Server Error"})

        adapter, job = await self._job(handler)

        with pytest.raises(TransientProviderError):
            await adapter.poll(job)
        assert job.status == JobStatus.PROCESSING

    async def test_server_error_on_result_fetch_is_retried_later(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=queued("fal-ai/wan-25-preview/image-to-video", "r1"))
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(500, json={"detail": "Internal Server Error"})

        adapter, job = await self._job(handler)

        with pytest.raises(TransientProviderError):
            await adapter.poll(job)


class TestFalImage:
    async def test_combine_sends_both_images(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=queued("fal-ai/flux-pro/kontext/max/multi", "img-1"))

        adapter = FalImageAdapter(api_key="k", client=make_client(handler))
        [job] = await adapter.submit("o1", "https://f/a.jpg", "", "https://f/b.jpg")

        assert job.provider == ProviderKind.FAL_IMAGE
        assert bodies[0]["image_urls"] == ["https://f/a.jpg", "https://f/b.jpg"]
        assert bodies[0]["prompt"]

    async def test_poll_reads_first_image(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=queued("fal-ai/flux-pro/kontext/max/multi", "img-1"))
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(200, json={"images": [{"url": "https://cdn/combined.jpg"}]})

        adapter = FalImageAdapter(api_key="k", client=make_client(handler))
        [job] = await adapter.submit("o1", "https://f/a.jpg", "", "https://f/b.jpg")

        assert (await adapter.poll(job)).result_ref == "https://cdn/combined.jpg"
