"""DeskPilot – Application Configuration.

Pydantic Settings, loaded from a .env file or environment variables.
"""

import socket

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ESCALATION_KEYWORDS = [
    "speak to human",
    "human agent",
    "manager",
    "supervisor",
    "complaint",
    "refund",
    "cancel",
    "billing issue",
    "not satisfied",
    "unhappy",
    "frustrated",
    "angry",
    "lawsuit",
]


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    cors_allowed_origins: str = "http://localhost:3000"

    # --- Persistence ---
    database_url: str = "sqlite:///./deskpilot.db"

    # --- Redis ---
    redis_url: str = "redis://127.0.0.1:6379/0"

    # --- Job queue ---
    job_backend: str = "memory"  # 'memory' = best-effort in-process, 'redis' = durable
    job_max_attempts: int = 3
    job_backoff_seconds: float = 2.0
    job_poll_interval_seconds: float = 1.0
    job_consumer_id: str = Field(default_factory=socket.gethostname)
    job_failed_retention: int = 1000
    job_lease_ttl_seconds: float = 60.0  # consumers silent this long lose their leases
    job_workers_in_gateway: bool = True

    # --- LLM ---
    llm_provider: str = "openai"  # openai | gemini
    llm_api_key: str = ""
    llm_base_url: str = ""
    llm_model: str = ""
    llm_timeout_seconds: float = 8.0
    llm_max_tokens: int = 400
    llm_temperature: float = 0.3

    # --- Escalation / generation ---
    escalation_mode: str = "keyword"  # keyword | ai
    escalation_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_ESCALATION_KEYWORDS))
    context_window: int = 5
    reply_word_budget: int = 200

    # --- WhatsApp / Meta ---
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""  # HMAC-SHA256 webhook signature verification
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""

    # --- Instagram / Meta ---
    instagram_verify_token: str = ""
    instagram_app_secret: str = ""
    instagram_access_token: str = ""

    graph_api_base: str = "https://graph.facebook.com/v21.0"
    delivery_timeout_seconds: float = 15.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def llm_configured(self) -> bool:
        return bool(self.llm_api_key)


def get_settings() -> Settings:
    """Factory function for settings."""
    return Settings()
