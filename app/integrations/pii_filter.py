"""DeskPilot – PII Filter.

Regex-based PII detection and masking for log safety.
Applied to log events, NOT to stored customer content.
"""

import re
from typing import Any

# ──────────────────────────────────────────
# PII Patterns
# ──────────────────────────────────────────

PATTERNS: dict[str, re.Pattern[str]] = {
    # WhatsApp ids are bare E.164 digits, so the '+' is optional.
    "phone": re.compile(r"\+?\b\d{10,15}\b"),
    "email": re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}"),
}

# Log fields that carry identifiers or metadata, never customer PII.
SAFE_LOG_KEYS = {"event", "level", "timestamp", "job_id", "job_type", "exception", "logger"}


class PIIFilter:
    """PII detection and masking.

    Usage:
        pii = PIIFilter()
        safe_text = pii.mask(customer_id)  # For logging only
        has_pii = pii.contains_pii(customer_id)
    """

    def __init__(self, patterns: dict[str, re.Pattern[str]] | None = None) -> None:
        self._patterns = patterns or PATTERNS

    def contains_pii(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self._patterns.values())

    def mask(self, text: str) -> str:
        """Mask all PII in text.

        - Phone: 491701234567 → 49170****
        - Email: user@example.com → u****@e****.com
        """

        def mask_phone(match: re.Match[str]) -> str:
            full = match.group(0)
            if len(full) > 5:
                return full[:5] + "****"
            return "****"

        def mask_email(match: re.Match[str]) -> str:
            local, _, domain = match.group(0).partition("@")
            domain_name, _, tld = domain.rpartition(".")
            masked_local = (local[:1] or "") + "****"
            masked_domain = (domain_name[:1] or "") + "****"
            return f"{masked_local}@{masked_domain}.{tld or 'com'}"

        result = self._patterns["phone"].sub(mask_phone, text)
        return self._patterns["email"].sub(mask_email, result)


_default_filter = PIIFilter()


def filter_log_record(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: mask PII in every string field of a log event."""
    for key, value in event_dict.items():
        if key in SAFE_LOG_KEYS or not isinstance(value, str):
            continue
        event_dict[key] = _default_filter.mask(value)
    return event_dict
