"""DeskPilot – Response Generator.

Builds a bounded conversation context, asks the LLM for a reply under a
timeout, and falls back to a deterministic reply when the LLM is
unconfigured, fails or times out.

Fallback selection: the first rule in FALLBACK_RULES whose keywords occur in
the customer message wins; only when no rule matches is a reply drawn from
FALLBACK_POOL.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Literal

import structlog

from app.ai.llm import LLMClient, LLMError
from app.core.instrumentation import AI_REPLIES_TOTAL
from app.core.models import Sender
from app.gateway.persistence import ConversationStore
from app.gateway.schemas import ConversationRecord, MessageRecord

logger = structlog.get_logger()

SYSTEM_INSTRUCTION = "You are a helpful customer support assistant. Be professional, concise, and helpful."

FALLBACK_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("order", "purchase"),
        "I can help you with your order inquiry. Could you please provide your order number?",
    ),
    (
        ("refund", "return"),
        "I understand you'd like information about a refund. I'm connecting you with our billing team.",
    ),
    (
        ("technical", "bug", "error"),
        "I see you're experiencing a technical issue. Let me connect you with our technical support team.",
    ),
)

FALLBACK_POOL: tuple[str, ...] = (
    "Thank you for your message. I'm here to help you with your inquiry.",
    "I understand your concern. Let me assist you with that.",
    "Thanks for reaching out. I'll do my best to help resolve your issue.",
    "I appreciate you contacting us. How can I help you today?",
    "Thank you for your patience. I'm working on your request.",
)

SUMMARY_PROMPT = "Summarize this customer support conversation in 2-3 sentences:\n\n{history}\n\nSummary:"
NO_SUMMARY_DATA = "No conversation data available for summary."

_SPEAKERS = {Sender.CUSTOMER: "Customer", Sender.AI: "Assistant", Sender.HUMAN: "Agent"}


@dataclass
class GeneratedReply:
    text: str
    source: Literal["llm", "fallback"]


def format_history(messages: list[MessageRecord]) -> str:
    return "\n".join(f"{_SPEAKERS[m.sender]}: {m.content}" for m in messages)


def build_prompt(
    conversation: ConversationRecord,
    context: list[MessageRecord],
    customer_message: str,
    word_budget: int = 200,
) -> str:
    """Deterministic reply prompt. Same inputs always give the same prompt."""
    return (
        f"{SYSTEM_INSTRUCTION}\n\n"
        f"Channel: {conversation.channel.value}\n"
        f"Customer: {conversation.customer_name or 'Customer'}\n\n"
        f"Previous conversation:\n{format_history(context)}\n\n"
        f"Current customer message: {customer_message}\n\n"
        f"Respond as the assistant (keep response under {word_budget} words):"
    )


def fallback_reply(customer_message: str, rng: random.Random | None = None) -> str:
    lowered = (customer_message or "").lower()
    for keywords, reply in FALLBACK_RULES:
        if any(keyword in lowered for keyword in keywords):
            return reply
    return (rng or random).choice(FALLBACK_POOL)


class ResponseGenerator:
    """Wraps the LLM collaborator with a context window, a timeout and a fallback."""

    def __init__(
        self,
        store: ConversationStore,
        llm: LLMClient | None = None,
        *,
        context_window: int = 5,
        timeout: float = 8.0,
        word_budget: int = 200,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._llm = llm
        self._context_window = max(0, context_window)
        self._timeout = timeout
        self._word_budget = word_budget
        self._rng = rng

    @property
    def llm_enabled(self) -> bool:
        return self._llm is not None and self._llm.configured

    async def load_context(
        self,
        conversation_id: int,
        customer_message: str,
        message_id: int | None = None,
    ) -> list[MessageRecord]:
        """Most recent prior messages, oldest first.

        The current customer turn is already stored by the time a reply is
        generated; it is excluded so it only appears once in the prompt. With
        a message_id the turn is dropped wherever it sorts (an older platform
        timestamp can place it before later messages); without one only a
        trailing customer message with the same text is dropped.
        """
        if self._context_window == 0:
            return []
        recent = await self._store.recent_messages(conversation_id, self._context_window + 1)
        if message_id is not None:
            recent = [m for m in recent if m.id != message_id]
        elif recent and recent[-1].sender == Sender.CUSTOMER and recent[-1].content == customer_message:
            recent = recent[:-1]
        return recent[-self._context_window:]

    async def generate(
        self,
        conversation: ConversationRecord,
        customer_message: str,
        context: list[MessageRecord],
    ) -> GeneratedReply:
        if not self.llm_enabled:
            logger.info("generator.fallback", conversation_id=conversation.id, reason="llm_not_configured")
            return self._fallback(customer_message)

        prompt = build_prompt(conversation, context, customer_message, self._word_budget)
        try:
            text = await asyncio.wait_for(self._llm.ask(prompt), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("generator.fallback", conversation_id=conversation.id, reason="timeout", timeout_s=self._timeout)
            return self._fallback(customer_message)
        except LLMError as exc:
            logger.warning("generator.fallback", conversation_id=conversation.id, reason="llm_error", error=str(exc))
            return self._fallback(customer_message)

        AI_REPLIES_TOTAL.labels(source="llm").inc()
        return GeneratedReply(text=text, source="llm")

    def _fallback(self, customer_message: str) -> GeneratedReply:
        AI_REPLIES_TOTAL.labels(source="fallback").inc()
        return GeneratedReply(text=fallback_reply(customer_message, self._rng), source="fallback")

    async def summarize(self, conversation_id: int) -> str:
        """Two-to-three sentence summary of the whole conversation.

        Raises:
            ConversationNotFound: Unknown conversation id.
        """
        conversation = await self._store.get_conversation(conversation_id)
        messages = await self._store.list_messages(conversation_id)
        if not messages:
            return NO_SUMMARY_DATA

        if self.llm_enabled:
            try:
                return await asyncio.wait_for(
                    self._llm.ask(SUMMARY_PROMPT.format(history=format_history(messages))),
                    timeout=self._timeout,
                )
            except (LLMError, asyncio.TimeoutError) as exc:
                logger.warning("generator.summary_fallback", conversation_id=conversation_id, error=str(exc))

        return (
            f"Conversation summary: Customer {conversation.customer_name} contacted via "
            f"{conversation.channel.value}. {len(messages)} messages exchanged. "
            f"Status: {conversation.status.value}"
        )
