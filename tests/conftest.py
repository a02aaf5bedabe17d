"""DeskPilot – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Keep tests away from any developer .env / production settings
os.environ["ENVIRONMENT"] = "testing"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("JOB_BACKEND", None)

import fakeredis.aioredis
import pytest
from httpx import ASGITransport, AsyncClient

from app.core.db import create_db_engine, create_session_factory, run_migrations
from app.gateway.dependencies import build_pipeline
from app.gateway.main import create_app
from app.gateway.persistence import ConversationStore
from app.gateway.realtime import EventSink
from app.gateway.redis_bus import RedisBus
from app.gateway.schemas import RealtimeEvent
from app.jobs.memory import InMemoryJobQueue
from app.pipeline.intake import register_workers
from config.settings import Settings

WA_VERIFY_TOKEN = "wa-verify-token"
WA_APP_SECRET = "wa-app-secret"
IG_VERIFY_TOKEN = "ig-verify-token"
IG_APP_SECRET = "ig-app-secret"


class RecordingBroadcaster(EventSink):
    """Realtime sink that keeps every event in memory."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[RealtimeEvent] = []

    def deliver(self, evt: RealtimeEvent) -> None:
        self.events.append(evt)

    def named(self, event: str) -> list[RealtimeEvent]:
        return [e for e in self.events if e.event == event]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="testing",
        database_url=f"sqlite:///{tmp_path / 'deskpilot.db'}",
        job_backend="memory",
        llm_api_key="",
        whatsapp_verify_token=WA_VERIFY_TOKEN,
        whatsapp_app_secret=WA_APP_SECRET,
        # No outbound credentials: delivery fails fast without network calls
        whatsapp_access_token="",
        whatsapp_phone_number_id="",
        instagram_verify_token=IG_VERIFY_TOKEN,
        instagram_app_secret=IG_APP_SECRET,
        instagram_access_token="",
    )


@pytest.fixture
def session_factory(settings):
    engine = create_db_engine(settings.database_url)
    run_migrations(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> ConversationStore:
    return ConversationStore(session_factory)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
async def pipeline(settings, session_factory, broadcaster):
    """Pipeline on the in-memory queue with all workers registered."""
    queue = InMemoryJobQueue()
    ctx = build_pipeline(settings, session_factory, broadcaster, queue)
    register_workers(ctx)
    await queue.start()
    yield ctx
    await queue.stop()


@pytest.fixture
async def redis_bus():
    bus = RedisBus()
    # Inject fakeredis client directly
    bus._client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield bus
    await bus.disconnect()


@pytest.fixture
async def client(settings, pipeline, broadcaster, redis_bus):
    """Async test client for the gateway, wired to the test pipeline."""
    app = create_app(settings)
    app.state.pipeline = pipeline
    app.state.broadcaster = broadcaster
    app.state.redis_bus = redis_bus
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
