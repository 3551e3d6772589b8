"""
Worker configuration, read from the environment (.env supported).
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .pipeline.models import ProviderKind


class Settings(BaseModel):
    # ── Orchestration ────────────────────────────────────────────────────────
    max_concurrent_orders: int = 3
    poll_interval_seconds: float = 5.0
    max_poll_attempts: int = 60
    stale_order_minutes: int = 30
    pending_sweep_seconds: float = 30.0
    throttle_sweep_seconds: float = 15.0

    # ── Providers ────────────────────────────────────────────────────────────
    animation_provider: ProviderKind = ProviderKind.FAL
    fal_video_models: list[str] = Field(default_factory=list)
    fal_key: str = ""
    runway_api_key: str = ""

    # ── Collaborators ────────────────────────────────────────────────────────
    telegram_bot_token: str = ""
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    redis_url: str = ""
    session_ttl_seconds: int = 3600

    # ── HTTP surface ─────────────────────────────────────────────────────────
    worker_shared_secret: str = ""
    environment: str = "development"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def _split_list(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_settings(env: Optional[dict] = None) -> Settings:
    """Build Settings from os.environ (after loading .env) or an explicit mapping."""
    if env is None:
        load_dotenv()
        env = os.environ

    values = {
        "max_concurrent_orders": env.get("MAX_CONCURRENT_ORDERS"),
        "poll_interval_seconds": env.get("POLL_INTERVAL_SECONDS"),
        "max_poll_attempts": env.get("MAX_POLL_ATTEMPTS"),
        "stale_order_minutes": env.get("STALE_ORDER_MINUTES"),
        "pending_sweep_seconds": env.get("PENDING_SWEEP_SECONDS"),
        "throttle_sweep_seconds": env.get("THROTTLE_SWEEP_SECONDS"),
        "animation_provider": env.get("ANIMATION_PROVIDER"),
        "fal_video_models": _split_list(env.get("FAL_VIDEO_MODELS")) or None,
        "fal_key": env.get("FAL_KEY"),
        "runway_api_key": env.get("RUNWAY_API_KEY"),
        "telegram_bot_token": env.get("TELEGRAM_BOT_TOKEN"),
        "supabase_url": env.get("SUPABASE_URL"),
        "supabase_service_role_key": env.get("SUPABASE_SERVICE_ROLE_KEY"),
        "redis_url": env.get("REDIS_URL"),
        "session_ttl_seconds": env.get("SESSION_TTL_SECONDS"),
        "worker_shared_secret": env.get("WORKER_SHARED_SECRET"),
        "environment": env.get("ENVIRONMENT"),
    }
    # Unset variables fall back to the model defaults
    return Settings(**{k: v for k, v in values.items() if v not in (None, "")})
