"""DeskPilot – Gateway.

FastAPI application: platform webhooks, the dashboard websocket, health,
metrics and the conversation summary endpoint. The lifespan builds the
pipeline context once and, unless workers run in their own process
(scripts/job_worker.py), runs the job workers on the same event loop.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from app.ai.llm import LLMClient
from app.core.db import create_db_engine, create_session_factory, run_migrations
from app.core.instrumentation import setup_instrumentation
from app.gateway.dependencies import build_llm, build_pipeline, build_queue, get_pipeline, get_redis_bus
from app.gateway.persistence import ConversationNotFound
from app.gateway.realtime import WebSocketBroadcaster, relay_events
from app.gateway.redis_bus import RedisBus
from app.gateway.routers.webhooks import router as webhooks_router
from app.gateway.routers.websocket import router as websocket_router
from app.pipeline.context import PipelineContext
from app.pipeline.intake import register_workers
from config.settings import Settings, get_settings

logger = structlog.get_logger()

VERSION = "1.0.0"


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return origins or ["http://localhost:3000"]


def _enforce_startup_guards(settings: Settings) -> None:
    if not settings.is_production:
        return

    unsigned = []
    if settings.whatsapp_access_token and not (settings.whatsapp_app_secret and settings.whatsapp_verify_token):
        unsigned.append("whatsapp")
    if settings.instagram_access_token and not (settings.instagram_app_secret and settings.instagram_verify_token):
        unsigned.append("instagram")
    if unsigned:
        raise RuntimeError(
            f"Refusing startup in production: webhook secrets missing for {', '.join(unsigned)}."
        )


async def _probe_llm(llm: LLMClient) -> None:
    if not llm.configured:
        logger.warning("deskpilot.gateway.llm_not_configured", msg="Using fallback responses")
        return
    if await llm.ping():
        logger.info("deskpilot.gateway.llm_connected", provider=llm.provider, model=llm.model)
    else:
        logger.warning("deskpilot.gateway.llm_unreachable", provider=llm.provider, msg="Using fallback responses")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Build the pipeline on startup, stop workers and close connections on shutdown."""
    settings: Settings = app.state.settings
    background_tasks: list[asyncio.Task] = []
    _enforce_startup_guards(settings)

    engine = create_db_engine(settings.database_url)
    run_migrations(engine)
    logger.info("deskpilot.gateway.startup", version=VERSION, env=settings.environment)

    redis_bus = RedisBus(redis_url=settings.redis_url)
    redis_ok = False
    try:
        await redis_bus.connect()
        redis_ok = True
    except (RedisError, OSError) as exc:
        if settings.job_backend == "redis":
            raise
        logger.warning("deskpilot.gateway.redis_unavailable", msg="Starting without Redis", error=str(exc))

    broadcaster = WebSocketBroadcaster()
    queue = build_queue(settings, redis_bus if redis_ok else None)
    llm = build_llm(settings)
    pipeline = build_pipeline(settings, create_session_factory(engine), broadcaster, queue, llm)

    if settings.job_workers_in_gateway or queue.backend == "memory":
        if not settings.job_workers_in_gateway:
            logger.warning("deskpilot.gateway.memory_queue_needs_local_workers")
        register_workers(pipeline)
        await queue.start()

    if redis_ok:
        background_tasks.append(asyncio.create_task(relay_events(redis_bus, broadcaster)))
    background_tasks.append(asyncio.create_task(_probe_llm(llm)))

    app.state.redis_bus = redis_bus
    app.state.broadcaster = broadcaster
    app.state.pipeline = pipeline

    yield

    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    await queue.stop()
    await broadcaster.flush()
    await redis_bus.disconnect()
    engine.dispose()
    logger.info("deskpilot.gateway.shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="DeskPilot Gateway",
        description="DeskPilot – Customer Support Message Pipeline – FastAPI + Redis + WebSocket",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    setup_instrumentation(app, settings.log_level)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(webhooks_router)
    app.include_router(websocket_router)

    @app.get("/health")
    async def health_check(redis_bus: RedisBus = Depends(get_redis_bus)) -> dict[str, Any]:
        """Health endpoint – returns system status."""
        redis_ok = await redis_bus.health_check()
        return {
            "status": "ok" if redis_ok else "degraded",
            "service": "deskpilot-gateway",
            "version": VERSION,
            "redis": "connected" if redis_ok else "disconnected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/conversations/{conversation_id}/summary")
    async def conversation_summary(
        conversation_id: int,
        ctx: PipelineContext = Depends(get_pipeline),
    ) -> dict[str, Any]:
        try:
            summary = await ctx.generator.summarize(conversation_id)
        except ConversationNotFound as exc:
            raise HTTPException(status_code=404, detail="Conversation not found") from exc
        return {"conversationId": conversation_id, "summary": summary}

    return app


app = create_app()
