"""Tests for settings loading and provider wiring."""

from photoreel.config import Settings, load_settings
from photoreel.fal import FalImageAdapter, FalVideoAdapter
from photoreel.mock_provider import MockAdapter
from photoreel.pipeline.models import GenerationJob, ProviderKind
from photoreel.provider_factory import ProviderFactory
from photoreel.runway import RunwayAdapter


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings({})

        assert settings.max_concurrent_orders == 3
        assert settings.poll_interval_seconds == 5
        assert settings.max_poll_attempts == 60
        assert settings.stale_order_minutes == 30
        assert settings.animation_provider == ProviderKind.FAL
        assert not settings.supabase_configured
        assert settings.is_development

    def test_environment_overrides(self):
        settings = load_settings({
            "MAX_CONCURRENT_ORDERS": "5",
            "POLL_INTERVAL_SECONDS": "2.5",
            "ANIMATION_PROVIDER": "runway",
            "FAL_VIDEO_MODELS": "kling-2.5-turbo, wan-2.5",
            "SUPABASE_URL": "https://x.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "service",
            "ENVIRONMENT": "production",
        })

        assert settings.max_concurrent_orders == 5
        assert settings.poll_interval_seconds == 2.5
        assert settings.animation_provider == ProviderKind.RUNWAY
        assert settings.fal_video_models == ["kling-2.5-turbo", "wan-2.5"]
        assert settings.supabase_configured
        assert not settings.is_development


class TestProviderFactory:
    async def test_fal_wiring(self):
        factory = ProviderFactory.from_settings(Settings(fal_key="k", fal_video_models=["wan-2.5"]))

        assert isinstance(factory.animation_adapter(), FalVideoAdapter)
        assert factory.animation_adapter().models == ["wan-2.5"]
        assert isinstance(factory.combine_adapter(), FalImageAdapter)
        await factory.aclose()

    async def test_runway_wiring(self):
        factory = ProviderFactory.from_settings(Settings(animation_provider=ProviderKind.RUNWAY))

        assert isinstance(factory.animation_adapter(), RunwayAdapter)
        await factory.aclose()

    def test_mock_wiring_covers_both_stages(self):
        factory = ProviderFactory.from_settings(Settings(animation_provider=ProviderKind.MOCK))

        assert isinstance(factory.animation_adapter(), MockAdapter)
        assert factory.combine_adapter() is factory.animation_adapter()

    def test_jobs_route_by_provider_tag(self):
        runway, mock = RunwayAdapter(api_key="k"), MockAdapter()
        factory = ProviderFactory({ProviderKind.RUNWAY: runway, ProviderKind.MOCK: mock}, ProviderKind.RUNWAY)
        job = GenerationJob(order_id="o1", provider=ProviderKind.MOCK, model="runway-lookalike", handle="gen4_abc")

        assert factory.for_job(job) is mock
