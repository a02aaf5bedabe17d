"""DeskPilot – Instagram DM Integration.

Instagram Messaging over the Meta Graph API. Webhook events arrive as
`entry[].messaging[]` with millisecond timestamps; messages we sent
ourselves come back flagged `is_echo` and are ignored.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from app.core.models import Channel
from app.gateway.schemas import ConversationRecord, NormalizedMessage
from app.integrations.base import ChannelAdapter, as_dict, as_list, as_text

logger = structlog.get_logger()


class InstagramAdapter(ChannelAdapter):
    """Instagram Direct Message channel adapter."""

    channel = Channel.INSTAGRAM

    def __init__(
        self,
        verify_token: str = "",
        app_secret: str = "",
        access_token: str = "",
        graph_api_base: str = "https://graph.facebook.com/v21.0",
        timeout: float = 15.0,
    ) -> None:
        super().__init__(verify_token=verify_token, app_secret=app_secret)
        self._access_token = access_token
        self._send_url = f"{graph_api_base.rstrip('/')}/me/messages"
        self._timeout = timeout

    @property
    def can_deliver(self) -> bool:
        return bool(self._access_token)

    def _normalize(self, raw_payload: Any) -> list[NormalizedMessage]:
        messages: list[NormalizedMessage] = []
        for entry in as_list(as_dict(raw_payload).get("entry")):
            for event in as_list(as_dict(entry).get("messaging")):
                event = as_dict(event)
                message = as_dict(event.get("message"))
                if message.get("is_echo"):
                    continue
                sender = as_text(as_dict(event.get("sender")).get("id"))
                if not sender or not message:
                    # Reactions, reads and postbacks carry no message body.
                    continue
                timestamp = event.get("timestamp")
                messages.append(
                    NormalizedMessage(
                        channel=self.channel,
                        customer_external_id=sender,
                        text=as_text(message.get("text")),
                        platform_timestamp=timestamp if isinstance(timestamp, (str, int, float)) else None,
                        platform_message_id=as_text(message.get("mid")) or None,
                    )
                )
        return messages

    async def _deliver(self, conversation: ConversationRecord, text: str) -> bool:
        if not self.can_deliver:
            logger.warning("instagram.delivery_not_configured", conversation_id=conversation.id)
            return False

        payload = {
            "recipient": {"id": conversation.customer_external_id},
            "message": {"text": text},
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self._send_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )

        if not self._is_success(resp):
            logger.error(
                "instagram.send_failed",
                conversation_id=conversation.id,
                status=resp.status_code,
                detail=resp.text[:200],
            )
            return False

        logger.info("instagram.message_sent", conversation_id=conversation.id)
        return True
