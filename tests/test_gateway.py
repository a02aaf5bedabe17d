"""DeskPilot – Gateway Tests.

Tests: Health, metrics, webhook verification handshake, webhook ingress,
website widget, webhook health, conversation summary, startup guards,
dashboard websocket.
"""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient

from app.core.models import Channel, Sender
from app.gateway.main import _enforce_startup_guards, create_app
from app.gateway.persistence import ConversationStore
from app.gateway.realtime import WebSocketBroadcaster
from config.settings import Settings

WA_VERIFY_TOKEN = "wa-verify-token"
WA_APP_SECRET = "wa-app-secret"
IG_VERIFY_TOKEN = "ig-verify-token"


def _sign(body: bytes, secret: str = WA_APP_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _whatsapp_payload(text_block: dict | None = None, wa_id: str = "4915112345678") -> dict:
    message = {"from": wa_id, "id": "wamid.TEST1", "timestamp": "1700000000", "type": "text"}
    if text_block is not None:
        message["text"] = text_block
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "contacts": [{"wa_id": wa_id, "profile": {"name": "Alice"}}],
                            "messages": [message],
                        },
                    }
                ],
            }
        ],
    }


# ──────────────────────────────────────────
# Health & Metrics
# ──────────────────────────────────────────


class TestHealthEndpoint:

    @pytest.mark.anyio
    async def test_health_reports_redis(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["redis"] == "connected"
        assert data["service"] == "deskpilot-gateway"

    @pytest.mark.anyio
    async def test_health_degraded_without_redis(self, client: AsyncClient, redis_bus) -> None:
        redis_bus.health_check = AsyncMock(return_value=False)
        response = await client.get("/health")
        assert response.json()["status"] == "degraded"

    @pytest.mark.anyio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        await client.get("/health")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "deskpilot_http_requests_total" in response.text


# ──────────────────────────────────────────
# Webhook Verification (GET)
# ──────────────────────────────────────────


class TestWebhookVerification:

    @pytest.mark.anyio
    async def test_whatsapp_challenge_echoed_exactly(self, client: AsyncClient) -> None:
        response = await client.get(
            "/webhook/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": WA_VERIFY_TOKEN, "hub.challenge": "xyz123"},
        )
        assert response.status_code == 200
        assert response.text == "xyz123"

    @pytest.mark.anyio
    async def test_wrong_token_forbidden_with_empty_body(self, client: AsyncClient) -> None:
        response = await client.get(
            "/webhook/whatsapp",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "xyz123"},
        )
        assert response.status_code == 403
        assert response.content == b""

    @pytest.mark.anyio
    async def test_wrong_mode_forbidden(self, client: AsyncClient) -> None:
        response = await client.get(
            "/webhook/whatsapp",
            params={"hub.mode": "unsubscribe", "hub.verify_token": WA_VERIFY_TOKEN, "hub.challenge": "xyz123"},
        )
        assert response.status_code == 403

    @pytest.mark.anyio
    async def test_missing_params_forbidden(self, client: AsyncClient) -> None:
        response = await client.get("/webhook/whatsapp")
        assert response.status_code == 403

    @pytest.mark.anyio
    async def test_instagram_uses_its_own_token(self, client: AsyncClient) -> None:
        ok = await client.get(
            "/webhook/instagram",
            params={"hub.mode": "subscribe", "hub.verify_token": IG_VERIFY_TOKEN, "hub.challenge": "ig-987"},
        )
        assert ok.status_code == 200
        assert ok.text == "ig-987"

        cross = await client.get(
            "/webhook/instagram",
            params={"hub.mode": "subscribe", "hub.verify_token": WA_VERIFY_TOKEN, "hub.challenge": "ig-987"},
        )
        assert cross.status_code == 403


# ──────────────────────────────────────────
# Webhook Ingress (POST)
# ──────────────────────────────────────────


class TestWebhookIngress:

    @pytest.mark.anyio
    async def test_signed_message_is_queued_and_stored(self, client: AsyncClient, pipeline) -> None:
        body = json.dumps(_whatsapp_payload({"body": "Hello there"})).encode()
        response = await client.post(
            "/webhook/whatsapp",
            content=body,
            headers={"X-Hub-Signature-256": _sign(body), "Content-Type": "application/json"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "queued", "jobs": 1}

        await pipeline.queue.drain()
        conversations = await pipeline.store.list_conversations()
        assert len(conversations) == 1
        assert conversations[0].channel == Channel.WHATSAPP
        assert conversations[0].customer_name == "Alice"

        messages = await pipeline.store.list_messages(conversations[0].id)
        assert [m.sender for m in messages] == [Sender.CUSTOMER, Sender.AI]
        assert messages[0].content == "Hello there"

    @pytest.mark.anyio
    async def test_bad_signature_rejected_without_job(self, client: AsyncClient, pipeline) -> None:
        body = json.dumps(_whatsapp_payload({"body": "Hello"})).encode()
        response = await client.post(
            "/webhook/whatsapp",
            content=body,
            headers={"X-Hub-Signature-256": _sign(body, secret="not-the-secret")},
        )
        assert response.status_code == 403

        await pipeline.queue.drain()
        assert await pipeline.store.list_conversations() == []

    @pytest.mark.anyio
    async def test_missing_signature_rejected(self, client: AsyncClient) -> None:
        body = json.dumps(_whatsapp_payload({"body": "Hello"})).encode()
        response = await client.post("/webhook/whatsapp", content=body)
        assert response.status_code == 403

    @pytest.mark.anyio
    async def test_missing_text_body_becomes_empty_message(self, client: AsyncClient, pipeline) -> None:
        body = json.dumps(_whatsapp_payload(text_block={})).encode()
        response = await client.post("/webhook/whatsapp", content=body, headers={"X-Hub-Signature-256": _sign(body)})
        assert response.status_code == 200

        await pipeline.queue.drain()
        conversation = (await pipeline.store.list_conversations())[0]
        messages = await pipeline.store.list_messages(conversation.id)
        assert messages[0].sender == Sender.CUSTOMER
        assert messages[0].content == ""

    @pytest.mark.anyio
    async def test_non_json_body_is_ignored(self, client: AsyncClient, pipeline) -> None:
        body = b"{not json"
        response = await client.post("/webhook/whatsapp", content=body, headers={"X-Hub-Signature-256": _sign(body)})
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert await pipeline.store.list_conversations() == []

    @pytest.mark.anyio
    async def test_status_only_payload_is_ignored(self, client: AsyncClient) -> None:
        body = json.dumps({"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.X"}]}}]}]}).encode()
        response = await client.post("/webhook/whatsapp", content=body, headers={"X-Hub-Signature-256": _sign(body)})
        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "jobs": 0}

    @pytest.mark.anyio
    async def test_enqueue_failure_returns_500(self, client: AsyncClient, pipeline) -> None:
        pipeline.queue.enqueue = AsyncMock(side_effect=ConnectionError("broker down"))
        body = json.dumps(_whatsapp_payload({"body": "Hello"})).encode()
        response = await client.post("/webhook/whatsapp", content=body, headers={"X-Hub-Signature-256": _sign(body)})
        assert response.status_code == 500


class TestWebsiteWidget:

    @pytest.mark.anyio
    async def test_website_message_is_answered(self, client: AsyncClient, pipeline, broadcaster) -> None:
        response = await client.post(
            "/webhook/website",
            json={"customerId": "visitor-1", "text": "Where is my order?", "customerName": "Bob"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "queued"

        await pipeline.queue.drain()
        conversation = (await pipeline.store.list_conversations())[0]
        assert conversation.channel == Channel.WEBSITE
        messages = await pipeline.store.list_messages(conversation.id)
        assert messages[-1].sender == Sender.AI
        assert messages[-1].delivered is True
        assert "order number" in messages[-1].content
        assert len(broadcaster.named("new_message")) == 2

    @pytest.mark.anyio
    async def test_missing_customer_id_is_ignored(self, client: AsyncClient, pipeline) -> None:
        response = await client.post("/webhook/website", json={"text": "hi"})
        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "jobs": 0}

        await pipeline.queue.drain()
        assert await pipeline.store.list_conversations() == []

    @pytest.mark.anyio
    async def test_non_json_widget_body_is_ignored(self, client: AsyncClient, pipeline) -> None:
        response = await client.post(
            "/webhook/website",
            content=b"customerId=visitor-1&text=hi",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "jobs": 0}
        assert await pipeline.store.list_conversations() == []


class TestWebhookHealth:

    @pytest.mark.anyio
    async def test_lists_channel_readiness(self, client: AsyncClient) -> None:
        response = await client.get("/webhook/health")
        assert response.status_code == 200
        data = response.json()
        assert data["job_backend"] == "memory"
        assert data["channels"]["WHATSAPP"] == {"subscription": True, "signature": True, "delivery": False}
        assert data["channels"]["WEBSITE"]["delivery"] is True


class TestConversationSummary:

    @pytest.mark.anyio
    async def test_unknown_conversation_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/conversations/999/summary")
        assert response.status_code == 404

    @pytest.mark.anyio
    async def test_fallback_summary_without_llm(self, client: AsyncClient, store: ConversationStore) -> None:
        conversation, _ = await store.find_or_create_conversation(Channel.WEBSITE, "visitor-9", "Carol")
        await store.append_message(conversation.id, Sender.CUSTOMER, "Hi")
        await store.append_message(conversation.id, Sender.AI, "Hello Carol")

        response = await client.get(f"/conversations/{conversation.id}/summary")
        assert response.status_code == 200
        assert response.json()["summary"] == (
            "Conversation summary: Customer Carol contacted via WEBSITE. 2 messages exchanged. Status: OPEN"
        )

    @pytest.mark.anyio
    async def test_empty_conversation_summary(self, client: AsyncClient, store: ConversationStore) -> None:
        conversation, _ = await store.find_or_create_conversation(Channel.WEBSITE, "visitor-10")
        response = await client.get(f"/conversations/{conversation.id}/summary")
        assert response.json()["summary"] == "No conversation data available for summary."


class TestStartupGuards:

    def test_production_refuses_unsigned_platform(self) -> None:
        settings = Settings(
            _env_file=None,
            environment="production",
            whatsapp_access_token="token",
            whatsapp_verify_token="verify",
        )
        with pytest.raises(RuntimeError, match="whatsapp"):
            _enforce_startup_guards(settings)

    def test_production_accepts_fully_configured_platform(self) -> None:
        settings = Settings(
            _env_file=None,
            environment="production",
            instagram_access_token="token",
            instagram_verify_token="verify",
            instagram_app_secret="secret",
        )
        _enforce_startup_guards(settings)

    def test_development_skips_guard(self) -> None:
        _enforce_startup_guards(Settings(_env_file=None, whatsapp_access_token="token"))

    def test_escalation_keywords_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("ESCALATION_KEYWORDS", '["pineapple", "lawyer"]')
        assert Settings(_env_file=None).escalation_keywords == ["pineapple", "lawyer"]


class TestDashboardWebSocket:

    def test_join_leave_and_errors(self, settings) -> None:
        app = create_app(settings)
        broadcaster = WebSocketBroadcaster()
        app.state.broadcaster = broadcaster

        with TestClient(app).websocket_connect("/ws") as ws:
            ws.send_json({"action": "join_conversation", "conversationId": 12})
            assert ws.receive_json() == {"event": "joined", "data": {"room": "conversation_12"}}
            assert broadcaster.room_size("conversation_12") == 1

            ws.send_json({"action": "join_admin"})
            assert ws.receive_json() == {"event": "joined", "data": {"room": "admin_notifications"}}

            ws.send_json({"action": "leave_conversation", "conversationId": "12"})
            assert ws.receive_json()["event"] == "left"
            assert broadcaster.room_size("conversation_12") == 0

            ws.send_text("not json")
            assert ws.receive_json()["event"] == "error"

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["data"]["message"] == "Unsupported action: dance"
