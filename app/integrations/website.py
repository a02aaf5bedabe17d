"""DeskPilot – Website Chat Widget.

Same-origin widget: no signature, no subscription handshake. Replies reach
the visitor through the conversation's realtime room, so delivery is a
no-op that always succeeds.
"""

from typing import Any

from app.core.models import Channel
from app.gateway.schemas import ConversationRecord, NormalizedMessage
from app.integrations.base import ChannelAdapter, as_dict, as_text


class WebsiteAdapter(ChannelAdapter):
    channel = Channel.WEBSITE

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        return None

    def verify_inbound(self, raw_body: bytes, signature_header: str | None) -> bool:
        return True

    def _normalize(self, raw_payload: Any) -> list[NormalizedMessage]:
        body = as_dict(raw_payload)
        customer_id = as_text(body.get("customerId"))
        if not customer_id:
            return []
        timestamp = body.get("timestamp")
        return [
            NormalizedMessage(
                channel=self.channel,
                customer_external_id=customer_id,
                text=as_text(body.get("text")),
                platform_timestamp=timestamp if isinstance(timestamp, (str, int, float)) else None,
                platform_message_id=as_text(body.get("messageId")) or None,
                customer_name=as_text(body.get("customerName")) or None,
            )
        ]

    async def _deliver(self, conversation: ConversationRecord, text: str) -> bool:
        return True
