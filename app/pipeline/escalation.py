"""DeskPilot – Escalation Classifier.

Decides whether a customer turn must be handed to a human agent.

Modes (``ESCALATION_MODE``):
  - keyword (default): case-insensitive substring match against the
    configured keyword list. No external dependency.
  - ai: the keyword rule still applies; a message without a keyword hit is
    additionally classified by the LLM with a yes/no prompt. Any LLM error,
    timeout or unparseable answer falls back to the keyword result.
"""

import asyncio
from typing import Iterable

import structlog

from app.ai.llm import LLMClient, LLMError

logger = structlog.get_logger()

ESCALATION_PROMPT = (
    "You triage customer support messages. Decide whether the following message "
    "must be handed to a human agent (for example: explicit request for a person, "
    "legal threats, billing disputes, strong dissatisfaction).\n\n"
    "Message: {message}\n\n"
    "Answer with exactly one word: yes or no."
)


class EscalationClassifier:
    """Keyword rule with an optional LLM second opinion."""

    def __init__(
        self,
        keywords: Iterable[str],
        mode: str = "keyword",
        llm: LLMClient | None = None,
        timeout: float = 8.0,
    ) -> None:
        self._keywords = tuple(k.strip().lower() for k in keywords if k and k.strip())
        self._mode = mode if mode in {"keyword", "ai"} else "keyword"
        self._llm = llm
        self._timeout = timeout

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def ai_enabled(self) -> bool:
        return self._mode == "ai" and self._llm is not None and self._llm.configured

    def matched_keyword(self, text: str) -> str | None:
        lowered = (text or "").lower()
        for keyword in self._keywords:
            if keyword in lowered:
                return keyword
        return None

    async def should_escalate(self, conversation_id: int, text: str) -> bool:
        keyword = self.matched_keyword(text)
        if keyword is not None:
            logger.info("escalation.keyword_match", conversation_id=conversation_id, keyword=keyword)
            return True
        if not self.ai_enabled:
            return False
        return await self._ask_llm(conversation_id, text)

    async def _ask_llm(self, conversation_id: int, text: str) -> bool:
        try:
            answer = await asyncio.wait_for(
                self._llm.ask(ESCALATION_PROMPT.format(message=text), temperature=0.0, max_tokens=5),
                timeout=self._timeout,
            )
        except (LLMError, asyncio.TimeoutError) as exc:
            logger.warning("escalation.ai_failed", conversation_id=conversation_id, error=str(exc) or type(exc).__name__)
            return False

        verdict = answer.strip().lower().strip(".!")
        if verdict.startswith("yes"):
            logger.info("escalation.ai_match", conversation_id=conversation_id)
            return True
        if not verdict.startswith("no"):
            logger.warning("escalation.ai_unparseable", conversation_id=conversation_id, answer=answer[:50])
        return False
