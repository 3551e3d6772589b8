"""
Shared async HTTP helper with exponential backoff.

Retries 429 / 5xx gateway errors and transport failures:
    delay = BASE_DELAY * 2^attempt + random jitter
Honours a numeric Retry-After header when the provider sends one.
"""

import asyncio
import logging
import random

import httpx

from .pipeline.errors import TransientProviderError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0        # seconds, doubles each retry: 1, 2, 4
JITTER_MAX = 0.5
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


async def request_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request, retrying retryable failures.

    Non-retryable responses (including 4xx) are returned as-is so adapters
    can read the provider's error body. When retries run out the call raises
    TransientProviderError.
    """
    last_error = ""

    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            last_error = f"{type(e).__name__}: {e}"
            delay = base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Request error on attempt {attempt + 1}/{max_retries + 1}: {last_error} "
                f"(url={url})"
            )
        else:
            if response.status_code not in RETRYABLE_STATUS_CODES:
                return response

            last_error = f"HTTP {response.status_code}"
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                delay = int(retry_after)
            else:
                delay = base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"{response.status_code} on attempt {attempt + 1}/{max_retries + 1} (url={url})"
            )

        if attempt < max_retries:
            await asyncio.sleep(delay)

    raise TransientProviderError(f"{method} {url} failed after {max_retries + 1} attempts: {last_error}")
