"""
Unified Configuration Module for the Auto-Apply Orchestrator

All configuration settings are centralized here.
Import from this module: from api.config import config
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Server Settings ===
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    # === CORS Settings ===
    CORS_ORIGINS: List[str] = field(default_factory=lambda: [
        origin.strip() for origin in
        os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ])
    CORS_ALLOW_CREDENTIALS: bool = True

    # === Quota ===
    DEFAULT_PLAN_ID: str = os.getenv("DEFAULT_PLAN_ID", "FREE")

    # === Matching ===
    DEFAULT_MATCH_THRESHOLD: int = int(os.getenv("DEFAULT_MATCH_THRESHOLD", "70"))
    MATCH_FALLBACK_MIN: int = int(os.getenv("MATCH_FALLBACK_MIN", "30"))
    MATCH_FALLBACK_MAX: int = int(os.getenv("MATCH_FALLBACK_MAX", "85"))

    # === AI Providers ===
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o")
    OPENAI_MODEL_LITE: str = os.getenv("OPENAI_MODEL_LITE", "gpt-4o-mini")

    ANTHROPIC_API_KEY: Optional[str] = os.getenv("ANTHROPIC_API_KEY")
    ANTHROPIC_BASE_URL: str = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
    ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest")
    ANTHROPIC_MODEL_LITE: str = os.getenv("ANTHROPIC_MODEL_LITE", "claude-3-5-haiku-latest")

    AI_MAX_RETRIES: int = int(os.getenv("AI_MAX_RETRIES", "2"))
    AI_RETRY_DELAY_SECONDS: float = float(os.getenv("AI_RETRY_DELAY_SECONDS", "1.0"))
    AI_TIMEOUT_SECONDS: int = int(os.getenv("AI_TIMEOUT_SECONDS", "30"))

    # === Browser Executor ===
    EXECUTOR_URL: str = os.getenv("EXECUTOR_URL", "")
    EXECUTOR_TIMEOUT_SECONDS: int = int(os.getenv("EXECUTOR_TIMEOUT_SECONDS", "60"))
    WORKER_SHARED_SECRET: str = os.getenv("WORKER_SHARED_SECRET", "")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8080")

    # === Dispatch Loop ===
    QUEUE_WORKER_ENABLED: bool = os.getenv("QUEUE_WORKER_ENABLED", "true").lower() == "true"

    # === Security ===
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")

    # === Paths ===
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")

    @property
    def callback_url(self) -> str:
        """URL the executor posts results back to."""
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}/worker/update-job-status"

    def validate(self) -> List[str]:
        """Validate configuration and return list of missing required settings."""
        missing = []

        if not self.EXECUTOR_URL:
            missing.append("EXECUTOR_URL")
        if not self.WORKER_SHARED_SECRET:
            missing.append("WORKER_SHARED_SECRET")

        # Without any key every AI call takes the deterministic fallback
        if not self.OPENAI_API_KEY and not self.ANTHROPIC_API_KEY:
            missing.append("OPENAI_API_KEY (or ANTHROPIC_API_KEY)")

        return missing


# Global config instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the application configuration."""
    return config
