"""DeskPilot – WhatsApp Integration.

Meta WhatsApp Cloud API adapter. Inbound webhooks arrive as

    {"object": "whatsapp_business_account",
     "entry": [{"changes": [{"value": {"contacts": [...], "messages": [...]}}]}]}

and may batch several messages; outbound text goes to
`{graph_api_base}/{phone_number_id}/messages`.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from app.core.models import Channel
from app.gateway.schemas import ConversationRecord, NormalizedMessage
from app.integrations.base import ChannelAdapter, as_dict, as_list, as_text

logger = structlog.get_logger()


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Cloud API channel adapter."""

    channel = Channel.WHATSAPP

    def __init__(
        self,
        verify_token: str = "",
        app_secret: str = "",
        access_token: str = "",
        phone_number_id: str = "",
        graph_api_base: str = "https://graph.facebook.com/v21.0",
        timeout: float = 15.0,
    ) -> None:
        super().__init__(verify_token=verify_token, app_secret=app_secret)
        self._access_token = access_token
        self._phone_number_id = phone_number_id
        self._meta_url = f"{graph_api_base.rstrip('/')}/{phone_number_id}/messages"
        self._timeout = timeout

    @property
    def can_deliver(self) -> bool:
        return bool(self._access_token and self._phone_number_id)

    # ──────────────────────────────────────────────────────────────
    # Inbound
    # ──────────────────────────────────────────────────────────────

    def _normalize(self, raw_payload: Any) -> list[NormalizedMessage]:
        messages: list[NormalizedMessage] = []
        for entry in as_list(as_dict(raw_payload).get("entry")):
            for change in as_list(as_dict(entry).get("changes")):
                value = as_dict(as_dict(change).get("value"))
                names = self._contact_names(value)
                for msg in as_list(value.get("messages")):
                    normalized = self._normalize_message(as_dict(msg), names)
                    if normalized is not None:
                        messages.append(normalized)
        return messages

    @staticmethod
    def _contact_names(value: dict[str, Any]) -> dict[str, str]:
        names = {}
        for contact in as_list(value.get("contacts")):
            contact = as_dict(contact)
            name = as_dict(contact.get("profile")).get("name")
            if contact.get("wa_id") and name:
                names[as_text(contact["wa_id"])] = as_text(name)
        return names

    def _normalize_message(self, msg: dict[str, Any], names: dict[str, str]) -> NormalizedMessage | None:
        sender = as_text(msg.get("from"))
        if not sender:
            logger.warning("whatsapp.message_without_sender", message_id=msg.get("id"))
            return None

        msg_type = msg.get("type", "text")
        if msg_type == "text":
            text = as_text(as_dict(msg.get("text")).get("body"))
        else:
            # Media messages only carry text as a caption.
            text = as_text(as_dict(msg.get(msg_type)).get("caption")) if isinstance(msg_type, str) else ""

        return NormalizedMessage(
            channel=self.channel,
            customer_external_id=sender,
            text=text,
            platform_timestamp=msg.get("timestamp") if isinstance(msg.get("timestamp"), (str, int, float)) else None,
            platform_message_id=as_text(msg.get("id")) or None,
            customer_name=names.get(sender),
        )

    # ──────────────────────────────────────────────────────────────
    # Outbound
    # ──────────────────────────────────────────────────────────────

    async def _deliver(self, conversation: ConversationRecord, text: str) -> bool:
        if not self.can_deliver:
            logger.warning("whatsapp.delivery_not_configured", conversation_id=conversation.id)
            return False

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": conversation.customer_external_id,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self._meta_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )

        if not self._is_success(response):
            logger.error(
                "whatsapp.cloud_api.failed",
                conversation_id=conversation.id,
                status=response.status_code,
                detail=response.text[:200],
            )
            return False

        logger.info("whatsapp.cloud_api.sent", conversation_id=conversation.id)
        return True
