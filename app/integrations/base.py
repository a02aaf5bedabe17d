"""DeskPilot – Channel Adapter base.

A channel adapter translates between one external platform and the
pipeline's canonical shapes:

  - verify_inbound:       webhook authenticity (never raises)
  - normalize:            platform payload → NormalizedMessage list (never raises)
  - deliver:              outbound text → platform send API (never raises)
  - verify_subscription:  the GET `hub.challenge` handshake
"""

from __future__ import annotations

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from app.core.instrumentation import DELIVERIES_TOTAL
from app.core.models import Channel
from app.gateway.schemas import ConversationRecord, NormalizedMessage

logger = structlog.get_logger()


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def verify_meta_signature(app_secret: str, payload_body: bytes, signature_header: str | None) -> bool:
    """Check a Meta `X-Hub-Signature-256: sha256=<hex>` header against the raw body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), payload_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header[7:].strip())


class ChannelAdapter(ABC):
    """Base class for platform adapters."""

    channel: Channel

    def __init__(self, verify_token: str = "", app_secret: str = "") -> None:
        self._verify_token = verify_token
        self._app_secret = app_secret

    @property
    def can_deliver(self) -> bool:
        return True

    def describe(self) -> dict[str, bool]:
        """Readiness of this channel, for the webhook health endpoint."""
        return {
            "subscription": bool(self._verify_token),
            "signature": bool(self._app_secret),
            "delivery": self.can_deliver,
        }

    # ──────────────────────────────────────────────────────────────
    # Webhook verification
    # ──────────────────────────────────────────────────────────────

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Platform subscription handshake.

        Returns:
            The challenge, unmodified, when mode is 'subscribe' and the token
            matches the configured verify token; otherwise None.
        """
        if not self._verify_token or mode != "subscribe" or token is None or challenge is None:
            logger.warning("webhook.verification_failed", channel=self.channel.value, mode=mode)
            return None
        if not hmac.compare_digest(token.encode("utf-8"), self._verify_token.encode("utf-8")):
            logger.warning("webhook.verification_failed", channel=self.channel.value, mode=mode)
            return None
        logger.info("webhook.verified", channel=self.channel.value)
        return challenge

    def verify_inbound(self, raw_body: bytes, signature_header: str | None) -> bool:
        """Verify an inbound webhook's HMAC signature. Returns False on mismatch, never raises."""
        if not self._app_secret:
            logger.warning("webhook.signature_skipped", channel=self.channel.value, reason="no_app_secret_configured")
            return True
        try:
            return verify_meta_signature(self._app_secret, raw_body, signature_header)
        except Exception as exc:
            logger.error("webhook.signature_check_failed", channel=self.channel.value, error=str(exc))
            return False

    # ──────────────────────────────────────────────────────────────
    # Inbound / outbound
    # ──────────────────────────────────────────────────────────────

    def normalize(self, raw_payload: Any) -> list[NormalizedMessage]:
        """Map a platform payload to canonical inbound messages. Malformed parts are skipped."""
        try:
            return self._normalize(raw_payload)
        except Exception as exc:
            logger.error("normalizer.failed", channel=self.channel.value, error=str(exc))
            return []

    @abstractmethod
    def _normalize(self, raw_payload: Any) -> list[NormalizedMessage]:
        ...

    async def deliver(self, conversation: ConversationRecord, text: str) -> bool:
        """Send text to the conversation's customer. True only for a 2xx platform response."""
        try:
            delivered = await self._deliver(conversation, text)
        except httpx.HTTPError as exc:
            logger.error(
                "delivery.failed",
                channel=self.channel.value,
                conversation_id=conversation.id,
                error=str(exc),
            )
            delivered = False
        except Exception as exc:
            logger.error(
                "delivery.unexpected_error",
                channel=self.channel.value,
                conversation_id=conversation.id,
                error=str(exc),
            )
            delivered = False
        DELIVERIES_TOTAL.labels(channel=self.channel.value, outcome="sent" if delivered else "failed").inc()
        return delivered

    @abstractmethod
    async def _deliver(self, conversation: ConversationRecord, text: str) -> bool:
        ...

    @staticmethod
    def _is_success(response: httpx.Response) -> bool:
        return 200 <= response.status_code < 300
