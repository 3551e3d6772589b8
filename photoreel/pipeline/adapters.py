"""
Provider adapter contract.

Every generation backend is wrapped in a ProviderAdapter:

    submit(artifact_ref, prompt, secondary_ref) → [GenerationJob]
    poll(job)                                   → PollResult
    translate_error(raw)                        → ErrorKind

Two shapes exist:
  - SingleChannelAdapter: one request, one job. The job may come back already
    completed when the provider answers synchronously.
  - FanOutAdapter: the same request sent in parallel to a fixed list of model
    backends. Partial rejection is fine as long as one backend accepts.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from .. import metrics
from .errors import SubmissionError, classify_error
from .models import ErrorKind, GenerationJob, PollResult, ProviderKind

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    kind: ProviderKind

    @abstractmethod
    async def submit(
        self,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str] = None,
        stage: int = 1,
    ) -> list[GenerationJob]:
        """Submit work; raises SubmissionError if nothing was accepted."""

    @abstractmethod
    async def poll(self, job: GenerationJob) -> PollResult:
        """Check one job. Raises TransientProviderError on infrastructure trouble."""

    def translate_error(self, raw: Optional[str]) -> ErrorKind:
        return classify_error(raw)

    async def aclose(self):
        """Release network resources held by the adapter."""


class SingleChannelAdapter(ProviderAdapter):
    """Adapter for providers that take exactly one request per order."""

    model: str

    @abstractmethod
    async def submit_one(
        self,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str],
        stage: int,
    ) -> GenerationJob:
        """Submit a single request. Raises SubmissionError on rejection."""

    async def submit(
        self,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str] = None,
        stage: int = 1,
    ) -> list[GenerationJob]:
        start = time.time()
        try:
            job = await self.submit_one(order_id, artifact_ref, prompt, secondary_ref, stage)
        except SubmissionError as e:
            metrics.inc_counter(f"errors.submit.{self.kind.value}")
            metrics.record_error(f"submit.{self.kind.value}", e.kind.value, str(e.raw or ""))
            raise
        except Exception as e:
            # Anything else from the provider is still a rejection for this order
            raw = str(e)
            kind = self.translate_error(raw)
            metrics.inc_counter(f"errors.submit.{self.kind.value}")
            metrics.record_error(f"submit.{self.kind.value}", kind.value, raw)
            logger.error(f"{self.kind.value} submit failed for order {order_id}: {raw}", exc_info=True)
            raise SubmissionError(kind, raw) from e
        finally:
            metrics.record_latency(f"submit.{self.kind.value}", (time.time() - start) * 1000)

        metrics.inc_counter(f"requests.submit.{self.kind.value}")
        return [job]


class FanOutAdapter(ProviderAdapter):
    """
    Adapter that fans one request out to several model backends.

    Subclasses implement submit_model() for one backend; this class runs them
    concurrently and keeps whichever ones were accepted, in the configured
    model order.
    """

    models: list[str]

    @abstractmethod
    async def submit_model(
        self,
        model: str,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str],
        stage: int,
    ) -> GenerationJob:
        """Submit to one backend. Raises on rejection."""

    async def submit(
        self,
        order_id: str,
        artifact_ref: str,
        prompt: str,
        secondary_ref: Optional[str] = None,
        stage: int = 1,
    ) -> list[GenerationJob]:
        start = time.time()
        outcomes = await asyncio.gather(
            *(
                self.submit_model(model, order_id, artifact_ref, prompt, secondary_ref, stage)
                for model in self.models
            ),
            return_exceptions=True,
        )
        metrics.record_latency(f"submit.{self.kind.value}", (time.time() - start) * 1000)

        jobs: list[GenerationJob] = []
        first_error: Optional[SubmissionError] = None

        for model, outcome in zip(self.models, outcomes):
            if isinstance(outcome, GenerationJob):
                jobs.append(outcome)
                metrics.inc_counter(f"requests.submit.{self.kind.value}")
                continue

            if isinstance(outcome, SubmissionError):
                err = outcome
            elif isinstance(outcome, Exception):
                err = SubmissionError(self.translate_error(str(outcome)), str(outcome))
            else:
                # BaseException (cancellation etc.) must not be swallowed
                raise outcome

            logger.warning(f"{self.kind.value}/{model} rejected order {order_id}: {err}")
            metrics.inc_counter(f"errors.submit.{self.kind.value}")
            metrics.record_error(f"submit.{self.kind.value}", err.kind.value, str(err.raw or ""))
            if first_error is None:
                first_error = err

        if not jobs:
            raise first_error or SubmissionError(ErrorKind.UNKNOWN, "No models configured")

        logger.info(
            f"Fan-out for order {order_id}: {len(jobs)}/{len(self.models)} backends accepted "
            f"({', '.join(j.model for j in jobs)})"
        )
        return jobs
