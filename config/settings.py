from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful assistant. Answer in a friendly, conversational tone. "
    "Keep responses concise but informative."
)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Keep all credentials and config centralized here.
    """

    app_env: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))
    gemini_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    )
    gemini_model: str = field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-1.5-flash"))
    system_instruction: str = field(
        default_factory=lambda: os.getenv("SYSTEM_INSTRUCTION", DEFAULT_SYSTEM_INSTRUCTION)
    )
    temperature: float = field(default_factory=lambda: float(os.getenv("MODEL_TEMPERATURE", "0.7")))
    top_p: float = field(default_factory=lambda: float(os.getenv("MODEL_TOP_P", "0.8")))
    top_k: int = field(default_factory=lambda: int(os.getenv("MODEL_TOP_K", "40")))
    max_output_tokens: int = field(
        default_factory=lambda: int(os.getenv("MODEL_MAX_OUTPUT_TOKENS", "1024"))
    )
    gateway_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "60"))
    )
    gateway_max_retries: int = field(default_factory=lambda: int(os.getenv("GATEWAY_MAX_RETRIES", "2")))
    session_max_age_hours: float = field(
        default_factory=lambda: float(os.getenv("SESSION_MAX_AGE_HOURS", "24"))
    )
    sweep_interval_minutes: float = field(
        default_factory=lambda: float(os.getenv("SESSION_SWEEP_INTERVAL_MINUTES", "60"))
    )
    sweep_enabled: bool = field(default_factory=lambda: _env_bool("SESSION_SWEEP_ENABLED", "true"))
    rate_limit: str = field(default_factory=lambda: os.getenv("RATE_LIMIT", "100 per 15 minutes"))
    rate_limit_enabled: bool = field(default_factory=lambda: _env_bool("RATE_LIMIT_ENABLED", "true"))
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "3000")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    @property
    def session_max_age(self) -> timedelta:
        return timedelta(hours=self.session_max_age_hours)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(minutes=self.sweep_interval_minutes)

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in {"dev", "development", "local"}

    def generation_config(self) -> dict:
        return {
            "temperature": self.temperature,
            "topK": self.top_k,
            "topP": self.top_p,
            "maxOutputTokens": self.max_output_tokens,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
