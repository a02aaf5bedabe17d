"""Shared dependencies for the Gateway routers and the worker process.

Nothing here is constructed at import time: the gateway lifespan (or
scripts/job_worker.py) calls the builders once and keeps the results on
`app.state`; routers read them back through the `get_*` functions.
"""

import structlog
from fastapi import Request, WebSocket
from sqlalchemy.orm import sessionmaker

from app.ai.llm import LLMClient
from app.core.models import Channel
from app.gateway.persistence import ConversationStore
from app.gateway.realtime import EventSink, WebSocketBroadcaster
from app.gateway.redis_bus import RedisBus
from app.integrations.base import ChannelAdapter
from app.integrations.instagram import InstagramAdapter
from app.integrations.website import WebsiteAdapter
from app.integrations.whatsapp import WhatsAppAdapter
from app.jobs.memory import InMemoryJobQueue
from app.jobs.queue import JobQueue
from app.jobs.redis_queue import RedisJobQueue
from app.pipeline.context import PipelineContext
from app.pipeline.escalation import EscalationClassifier
from app.pipeline.generator import ResponseGenerator
from config.settings import Settings

logger = structlog.get_logger()


def build_adapters(settings: Settings) -> dict[Channel, ChannelAdapter]:
    return {
        Channel.WHATSAPP: WhatsAppAdapter(
            verify_token=settings.whatsapp_verify_token,
            app_secret=settings.whatsapp_app_secret,
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            graph_api_base=settings.graph_api_base,
            timeout=settings.delivery_timeout_seconds,
        ),
        Channel.INSTAGRAM: InstagramAdapter(
            verify_token=settings.instagram_verify_token,
            app_secret=settings.instagram_app_secret,
            access_token=settings.instagram_access_token,
            graph_api_base=settings.graph_api_base,
            timeout=settings.delivery_timeout_seconds,
        ),
        Channel.WEBSITE: WebsiteAdapter(),
    }


def build_llm(settings: Settings) -> LLMClient:
    return LLMClient(
        provider=settings.llm_provider,
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        timeout=settings.llm_timeout_seconds,
        max_tokens=settings.llm_max_tokens,
        temperature=settings.llm_temperature,
    )


def build_queue(settings: Settings, bus: RedisBus | None = None) -> JobQueue:
    """Select the job backend. The redis backend needs a connected bus."""
    if settings.job_backend == "redis":
        if bus is None:
            raise RuntimeError("JOB_BACKEND=redis requires a connected Redis bus.")
        return RedisJobQueue(
            bus.client,
            consumer_id=settings.job_consumer_id,
            max_attempts=settings.job_max_attempts,
            backoff_seconds=settings.job_backoff_seconds,
            poll_interval=settings.job_poll_interval_seconds,
            failed_retention=settings.job_failed_retention,
            lease_ttl=settings.job_lease_ttl_seconds,
        )
    if settings.job_backend != "memory":
        raise ValueError(f"Unknown JOB_BACKEND: {settings.job_backend!r}")
    return InMemoryJobQueue()


def build_pipeline(
    settings: Settings,
    session_factory: sessionmaker,
    broadcaster: EventSink,
    queue: JobQueue,
    llm: LLMClient | None = None,
) -> PipelineContext:
    llm = llm or build_llm(settings)
    store = ConversationStore(session_factory)
    return PipelineContext(
        store=store,
        classifier=EscalationClassifier(
            settings.escalation_keywords,
            mode=settings.escalation_mode,
            llm=llm,
            timeout=settings.llm_timeout_seconds,
        ),
        generator=ResponseGenerator(
            store,
            llm,
            context_window=settings.context_window,
            timeout=settings.llm_timeout_seconds,
            word_budget=settings.reply_word_budget,
        ),
        broadcaster=broadcaster,
        queue=queue,
        adapters=build_adapters(settings),
    )


def get_pipeline(request: Request) -> PipelineContext:
    return request.app.state.pipeline


def get_redis_bus(request: Request) -> RedisBus:
    return request.app.state.redis_bus


def get_broadcaster(websocket: WebSocket) -> WebSocketBroadcaster:
    return websocket.app.state.broadcaster
