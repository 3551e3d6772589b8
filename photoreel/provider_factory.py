import logging

from .config import Settings
from .fal import FalImageAdapter, FalVideoAdapter
from .mock_provider import MockAdapter
from .pipeline.adapters import ProviderAdapter
from .pipeline.models import GenerationJob, ProviderKind
from .runway import RunwayAdapter

logger = logging.getLogger(__name__)


class ProviderFactory:
    """
    Owns one adapter per provider kind.

    Jobs are routed back to their adapter by the provider-kind tag stamped at
    submission; identifiers are never parsed.
    """

    def __init__(
        self,
        adapters: dict[ProviderKind, ProviderAdapter],
        animation_kind: ProviderKind,
        combine_kind: ProviderKind = ProviderKind.FAL_IMAGE,
    ):
        self._adapters = dict(adapters)
        self.animation_kind = animation_kind
        self.combine_kind = combine_kind

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderFactory":
        animation_kind = settings.animation_provider
        adapters: dict[ProviderKind, ProviderAdapter] = {}

        if animation_kind == ProviderKind.MOCK:
            mock = MockAdapter()
            # The mock backend stands in for every stage
            adapters[ProviderKind.MOCK] = mock
            return cls(adapters, ProviderKind.MOCK, ProviderKind.MOCK)

        adapters[ProviderKind.FAL_IMAGE] = FalImageAdapter(api_key=settings.fal_key)
        if animation_kind == ProviderKind.RUNWAY:
            adapters[ProviderKind.RUNWAY] = RunwayAdapter(api_key=settings.runway_api_key)
        else:
            adapters[ProviderKind.FAL] = FalVideoAdapter(
                models=settings.fal_video_models or None,
                api_key=settings.fal_key,
            )
            animation_kind = ProviderKind.FAL

        logger.info(f"Provider factory ready: animation={animation_kind.value}, adapters={[k.value for k in adapters]}")
        return cls(adapters, animation_kind)

    def get(self, kind: ProviderKind) -> ProviderAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise KeyError(f"No adapter registered for provider '{kind.value}'")
        return adapter

    def for_job(self, job: GenerationJob) -> ProviderAdapter:
        return self.get(job.provider)

    def animation_adapter(self) -> ProviderAdapter:
        return self.get(self.animation_kind)

    def combine_adapter(self) -> ProviderAdapter:
        return self.get(self.combine_kind)

    async def aclose(self):
        seen: set[int] = set()
        for adapter in self._adapters.values():
            if id(adapter) in seen:
                continue
            seen.add(id(adapter))
            await adapter.aclose()
