"""DeskPilot – Redis Bus Unit Tests.

Tests: Connection, publish, health check, error handling, key layout.
Uses fakeredis for isolation – no real Redis needed.
"""

import pytest

from app.core.redis_keys import delayed_key, failed_key, pending_key, processing_key, redis_key
from app.gateway.redis_bus import RedisBus


class TestRedisBusConnection:
    """Test Redis connection lifecycle."""

    @pytest.mark.anyio
    async def test_health_check_returns_false_when_disconnected(self) -> None:
        bus = RedisBus(redis_url="redis://fake:6379/0")
        result = await bus.health_check()
        assert result is False

    @pytest.mark.anyio
    async def test_publish_raises_when_disconnected(self) -> None:
        bus = RedisBus(redis_url="redis://fake:6379/0")
        with pytest.raises(RuntimeError, match="not connected"):
            await bus.publish("test-channel", "test-message")

    @pytest.mark.anyio
    async def test_subscribe_raises_when_disconnected(self) -> None:
        bus = RedisBus(redis_url="redis://fake:6379/0")

        async def _noop(_: str) -> None:
            return None

        with pytest.raises(RuntimeError, match="not connected"):
            await bus.subscribe("test-channel", _noop)

    def test_client_property_raises_when_disconnected(self) -> None:
        bus = RedisBus()
        with pytest.raises(RuntimeError, match="not connected"):
            _ = bus.client


class TestRedisBusPubSub:
    """Publish with fakeredis (shared `redis_bus` fixture)."""

    @pytest.mark.anyio
    async def test_health_check_returns_true_when_connected(self, redis_bus: RedisBus) -> None:
        assert await redis_bus.health_check() is True

    @pytest.mark.anyio
    async def test_publish_returns_subscriber_count(self, redis_bus: RedisBus) -> None:
        count = await redis_bus.publish("deskpilot:test", '{"msg": "hello"}')
        # No subscribers yet, so count is 0
        assert count == 0

    @pytest.mark.anyio
    async def test_publish_to_events_channel(self, redis_bus: RedisBus) -> None:
        count = await redis_bus.publish(RedisBus.CHANNEL_EVENTS, '{"event": "test"}')
        assert isinstance(count, int)

    @pytest.mark.anyio
    async def test_disconnect_is_idempotent(self, redis_bus: RedisBus) -> None:
        await redis_bus.disconnect()
        await redis_bus.disconnect()
        assert await redis_bus.health_check() is False


class TestRedisKeys:
    """Verify key naming conventions shared by gateway and workers."""

    def test_events_channel_name(self) -> None:
        assert RedisBus.CHANNEL_EVENTS == "deskpilot:events"

    def test_job_keys(self) -> None:
        assert pending_key("ingest") == "deskpilot:jobs:ingest:pending"
        assert delayed_key("respond") == "deskpilot:jobs:respond:delayed"
        assert processing_key("respond", "worker-a") == "deskpilot:jobs:respond:processing:worker-a"
        assert failed_key("notify_escalation") == "deskpilot:jobs:notify_escalation:failed"

    def test_redis_key_requires_parts(self) -> None:
        with pytest.raises(ValueError):
            redis_key("deskpilot:jobs")
