"""
FastAPI Application — LINE webhook + operations API.

Provides:
- LINE webhook endpoint (signature-verified, processed in background)
- Forced off-cycle notification scan
- Subscriber status lookup
- Health and stats for the dispatcher, cache and delivery channel
- Lifespan that validates configuration and runs the scan/eviction loops
"""
from __future__ import annotations

import json
import structlog
from dataclasses import dataclass
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, APIRouter, BackgroundTasks, HTTPException, Request, Header
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, load_settings
from channels.line_adapter import LineAdapter
from core.classifier import classify, remaining
from core.commands import CommandHandler
from core.counter import parse_queue_number, resolve_counter
from core.dispatcher import NotificationDispatcher, CacheEvictor
from core.notification_cache import NotificationCache
from database.store_base import BaseStore
from database.store_factory import create_store

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueWatchService:
    """Everything the running service is wired from."""
    settings: Settings
    store: BaseStore
    line: LineAdapter
    cache: NotificationCache
    dispatcher: NotificationDispatcher
    evictor: CacheEvictor
    commands: CommandHandler


def build_service(
    settings: Settings,
    store: Optional[BaseStore] = None,
    line: Optional[LineAdapter] = None,
) -> QueueWatchService:
    store = store or create_store(settings.database)
    line = line or LineAdapter(
        channel_access_token=settings.line.channel_access_token,
        channel_secret=settings.line.channel_secret,
        api_base_url=settings.line.api_base_url,
        timeout=settings.line.timeout_seconds,
        rate_per_second=settings.line.rate_per_second,
        burst=settings.line.burst,
    )
    dispatch = settings.dispatch
    cache = NotificationCache(retention_seconds=dispatch.dedup_retention_seconds)
    dispatcher = NotificationDispatcher(
        repository=store,
        oracle=store,
        channel=line,
        cache=cache,
        near_threshold=dispatch.near_threshold,
        scan_interval_s=dispatch.scan_interval_seconds,
        max_concurrency=dispatch.max_concurrency,
        subscriber_timeout_s=dispatch.subscriber_timeout_seconds,
        locale=dispatch.locale,
    )
    evictor = CacheEvictor(cache, interval_seconds=dispatch.eviction_interval_seconds)
    commands = CommandHandler(store, line, near_threshold=dispatch.near_threshold,
                              locale=dispatch.locale)
    return QueueWatchService(settings, store, line, cache, dispatcher, evictor, commands)


# ──────────────────────────────────────────────────────────────
#  Routes
# ──────────────────────────────────────────────────────────────

router = APIRouter()


def _service(request: Request) -> QueueWatchService:
    return request.app.state.service


@router.get("/health")
async def health(request: Request):
    svc = _service(request)
    return {
        "status": "healthy",
        "dispatcher_running": svc.dispatcher.is_running,
        "scan_interval_s": svc.dispatcher.scan_interval_s,
        "near_threshold": svc.dispatcher.near_threshold,
    }


@router.get("/api/v1/stats")
async def get_stats(request: Request):
    svc = _service(request)
    last_scan = svc.dispatcher.last_scan
    stats: dict[str, Any] = {
        "total_scans": svc.dispatcher.total_scans,
        "skipped_ticks": svc.dispatcher.skipped_ticks,
        "scan_in_progress": svc.dispatcher.scan_in_progress,
        "last_scan": last_scan.model_dump(mode="json") if last_scan else None,
        "cache": svc.cache.stats(),
        "channel": await svc.line.health_check(),
    }
    if hasattr(svc.store, "stats"):
        stats["store"] = svc.store.stats()
    return stats


@router.post("/api/v1/scan")
async def force_scan(request: Request, x_admin_token: Optional[str] = Header(default=None)):
    """Run one scan now, outside the timer, with the same algorithm."""
    svc = _service(request)
    admin_token = svc.settings.api.admin_token
    if admin_token and x_admin_token != admin_token:
        raise HTTPException(401, "Invalid admin token")
    logger.info("forced_scan_requested")
    result = await svc.dispatcher.run_scan(forced=True)
    return result.model_dump(mode="json")


@router.get("/api/v1/subscriptions/{subscriber_id}/status")
async def subscription_status(subscriber_id: str, request: Request):
    svc = _service(request)
    sub = await svc.store.get_subscription(subscriber_id)
    if not sub:
        raise HTTPException(404, "Subscriber not found")

    body: dict[str, Any] = {
        "subscriber_id": sub.subscriber_id,
        "active": sub.active,
        "tracked_number": sub.tracked_number,
        "counter_id": None,
        "latest_called": None,
        "remaining": None,
        "transition": None,
    }
    counter_id = resolve_counter(sub.tracked_number) if sub.tracked_number else None
    if counter_id is None:
        return body
    body["counter_id"] = counter_id
    latest = await svc.store.latest_called(counter_id)
    if latest is None:
        return body
    tracked = parse_queue_number(sub.tracked_number)
    body["latest_called"] = latest
    body["remaining"] = remaining(tracked, latest)
    body["transition"] = classify(tracked, latest, svc.dispatcher.near_threshold).value
    return body


@router.post("/webhook/line")
async def line_webhook(request: Request, background_tasks: BackgroundTasks):
    """Receive LINE events. Acknowledges immediately; handling runs in background."""
    svc = _service(request)
    body_bytes = await request.body()

    signature = request.headers.get("X-Line-Signature", "")
    if not svc.line.verify_signature(body_bytes, signature):
        logger.warning("line_webhook_signature_invalid")
        raise HTTPException(403, "Invalid signature")

    try:
        payload = json.loads(body_bytes)
    except ValueError:
        raise HTTPException(400, "Invalid JSON body")
    if not isinstance(payload, dict):
        logger.warning("line_webhook_payload_invalid", payload_type=type(payload).__name__)
        raise HTTPException(400, "Webhook body must be a JSON object")

    events = svc.line.parse_events(payload)
    if events:
        background_tasks.add_task(svc.commands.handle_events, events)
    return {"status": "ok", "events": len(events)}


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseStore] = None,
    line: Optional[LineAdapter] = None,
    run_background: bool = True,
) -> FastAPI:
    """
    Build the application. Configuration is validated in the lifespan, so a
    missing token or endpoint aborts startup before anything is served.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.validate()
        service = build_service(settings, store=store, line=line)
        await service.store.initialize()
        app.state.service = service

        if run_background:
            await service.dispatcher.start()
            await service.evictor.start_background()

        logger.info("queuewatch_started",
                    store=type(service.store).__name__,
                    near_threshold=settings.dispatch.near_threshold,
                    interval_s=settings.dispatch.scan_interval_seconds)
        yield

        await service.dispatcher.stop()
        await service.evictor.stop()
        await service.line.shutdown()
        await service.store.close()
        logger.info("queuewatch_stopped")

    app = FastAPI(
        title="QueueWatch API",
        description="Queue position notifications over LINE",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    _settings = load_settings()
    uvicorn.run(app, host=_settings.api.host, port=_settings.api.port)
