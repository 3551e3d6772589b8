import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .config import Settings, load_settings
from .pipeline.errors import OrderNotFoundError
from .pipeline.ledger import SupabaseCreditLedger
from .pipeline.memory import InMemoryCreditLedger, InMemoryOrderStore
from .pipeline.models import ProcessOrderRequest
from .pipeline.orchestrator import JobOrchestrator
from .pipeline.routes import get_orchestrator, order_router
from .pipeline.scheduler import TaskScheduler
from .pipeline.store import SupabaseOrderStore
from .provider_factory import ProviderFactory
from .sessions import InMemorySessionBackend, RedisSessionBackend, SessionTable
from .telegram import LoggingNotifier, TelegramNotifier

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SESSION_PURGE_SECONDS = 300


# ── Wiring ────────────────────────────────────────────────────────────────────

def build_orchestrator(settings: Settings, scheduler: Optional[TaskScheduler] = None) -> JobOrchestrator:
    """Assemble the orchestrator from settings, falling back to in-process stores."""
    if settings.supabase_configured:
        store = SupabaseOrderStore()
        ledger = SupabaseCreditLedger()
        logger.info("Order store: Supabase")
    else:
        store = InMemoryOrderStore()
        ledger = InMemoryCreditLedger()
        logger.warning("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not set, using in-memory order store")

    if settings.redis_url:
        backend = RedisSessionBackend.from_url(settings.redis_url)
        logger.info(f"Session table: Redis ({settings.redis_url[:30]}...)")
    else:
        backend = InMemorySessionBackend()
        logger.info("No Redis, session table is in-memory")
    sessions = SessionTable(backend, ttl_seconds=settings.session_ttl_seconds)

    if settings.telegram_bot_token:
        notifier = TelegramNotifier(settings.telegram_bot_token)
    else:
        notifier = LoggingNotifier()
        logger.warning("TELEGRAM_BOT_TOKEN not set, notifications go to the log")

    return JobOrchestrator.from_settings(
        settings,
        store=store,
        ledger=ledger,
        factory=ProviderFactory.from_settings(settings),
        notifier=notifier,
        scheduler=scheduler or TaskScheduler(),
        sessions=sessions,
    )


def schedule_sweeps(orchestrator: JobOrchestrator, settings: Settings):
    scheduler = orchestrator.scheduler
    scheduler.every(settings.pending_sweep_seconds, orchestrator.process_pending_orders, name="pending-sweep")
    scheduler.every(settings.throttle_sweep_seconds, orchestrator.process_throttled_orders, name="throttle-sweep")
    if orchestrator.sessions is not None:
        scheduler.every(SESSION_PURGE_SECONDS, orchestrator.sessions.purge_expired, name="session-purge")


# ── App ───────────────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, orchestrator: Optional[JobOrchestrator] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Worker starting up (environment={settings.environment})...")
        owned = app.state.orchestrator is None
        if owned:
            app.state.orchestrator = build_orchestrator(settings)
            schedule_sweeps(app.state.orchestrator, settings)
        yield
        logger.info("Worker shutting down...")
        current = app.state.orchestrator
        await current.shutdown()
        if owned:
            await current.factory.aclose()
            await current.notifier.aclose()
            if current.sessions is not None:
                await current.sessions.aclose()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.add_middleware(
        WorkerAuthMiddleware,
        secret=settings.worker_shared_secret,
        environment=settings.environment,
    )
    app.include_router(order_router)

    @app.get("/health")
    async def health_check(request: Request):
        """Verify the worker is running and which backends are configured."""
        current = request.app.state.orchestrator
        return {
            "status": "ok",
            "environment": settings.environment,
            "animation_provider": settings.animation_provider.value,
            "supabase_configured": settings.supabase_configured,
            "redis_configured": bool(settings.redis_url),
            "telegram_configured": bool(settings.telegram_bot_token),
            "live_orders": current.live_orders if current else 0,
        }

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        """Return a snapshot of all worker metrics."""
        current = request.app.state.orchestrator
        if current is not None:
            metrics.set_gauge("sessions.live", current.live_orders)
        return metrics.get_snapshot()

    @app.post("/webhook/process-order")
    async def process_order_webhook(body: ProcessOrderRequest, request: Request):
        orchestrator = get_orchestrator(request)
        _req_start = time.time()
        metrics.inc_counter("requests.process_order")

        try:
            task = await orchestrator.process_order(body.order_id)
        except OrderNotFoundError:
            raise HTTPException(status_code=404, detail="Order not found")
        except Exception as e:
            logger.error(f"process-order failed for {body.order_id}: {e}", exc_info=True)
            metrics.inc_counter("errors.process_order")
            metrics.record_error("process_order", type(e).__name__, str(e), body.order_id)
            raise HTTPException(status_code=500, detail=str(e))
        finally:
            metrics.record_latency("process_order", (time.time() - _req_start) * 1000)

        order = await orchestrator.store.get_order(body.order_id)
        return {
            "order_id": body.order_id,
            "status": order.status.value,
            "monitoring": task is not None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("photoreel.main:app", host="0.0.0.0", port=port)
