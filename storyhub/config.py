"""
Application configuration management using Pydantic Settings.

This module provides a type-safe, centralized configuration system
that loads from environment variables with sensible defaults.
"""

import math
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when a required setting or credential is missing."""
    pass


class AppConfig(BaseSettings):
    """
    Application configuration loaded from environment variables.

    All settings can be overridden via .env file or environment variables.
    Settings are validated at startup using Pydantic.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True
    )

    # ===== Database Configuration =====
    DATABASE_PATH: str = Field(
        default="storyhub.db",
        description="Path to the SQLite database holding the catalog, stories and jobs"
    )

    Storage_Path: str | None = Field(
        default=None,
        alias="STORAGE_PATH",
        description="Persistent volume mount. If set, the database file is placed inside it"
    )

    @property
    def database_path(self) -> str:
        """Get the database path, using STORAGE_PATH if available."""
        if self.Storage_Path:
            return os.path.join(self.Storage_Path, os.path.basename(self.DATABASE_PATH))
        return self.DATABASE_PATH

    # ===== Text Generation (SiliconFlow, OpenAI-compatible) =====
    SILICONFLOW_API_KEY: str | None = Field(
        default=None,
        description="SiliconFlow API key (required for story and audio generation)"
    )

    SILICONFLOW_BASE_URL: str = Field(
        default="https://api.siliconflow.cn/v1",
        description="Base URL of the OpenAI-compatible SiliconFlow API"
    )

    SILICONFLOW_STORY_MODEL: str | None = Field(
        default=None,
        description="Chat model used to write stories (e.g. deepseek-ai/DeepSeek-V3)"
    )

    TEMPERATURE: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="LLM temperature for story generation"
    )

    REQUEST_TIMEOUT_SECONDS: float = Field(
        default=180.0,
        ge=1.0,
        description="Timeout for a single text or speech request"
    )

    # ===== Audio Generation =====
    SILICONFLOW_TTS_MODEL: str | None = Field(
        default=None,
        description="TTS model used for narration (e.g. fnlp/MOSS-TTSD-v0.5)"
    )

    SILICONFLOW_TTS_VOICE: str | None = Field(
        default=None,
        description="Voice identifier. MOSS-TTSD models default to '<model>:alex'; others omit the voice"
    )

    SILICONFLOW_TTS_FALLBACK_VOICE: str | None = Field(
        default=None,
        description="Voice tried once when the first voice is rejected; unset retries with no voice"
    )

    # ===== Object Storage (Cloudflare R2, S3-compatible) =====
    CLOUDFLARE_R2_ACCOUNT_ID: str | None = Field(default=None, description="R2 account id")
    CLOUDFLARE_R2_ACCESS_KEY_ID: str | None = Field(default=None, description="R2 access key id")
    CLOUDFLARE_R2_SECRET_ACCESS_KEY: str | None = Field(default=None, description="R2 secret access key")
    CLOUDFLARE_R2_BUCKET_NAME: str | None = Field(default=None, description="Bucket receiving narration audio")
    CLOUDFLARE_R2_PUBLIC_URL: str | None = Field(
        default=None,
        description="Public base URL of the bucket, joined with object keys"
    )

    @property
    def r2_endpoint_url(self) -> str | None:
        """S3 endpoint for the configured R2 account."""
        if not self.CLOUDFLARE_R2_ACCOUNT_ID:
            return None
        return f"https://{self.CLOUDFLARE_R2_ACCOUNT_ID}.r2.cloudflarestorage.com"

    # ===== Job Queue Policy =====
    JOB_MAX_ATTEMPTS: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Claims allowed per job before it is permanently excluded"
    )

    JOB_LOCK_TIMEOUT_MINUTES: int = Field(
        default=10,
        ge=1,
        description="Minutes after which a job lock is considered stale and reclaimable"
    )

    INTER_JOB_DELAY_SECONDS: float = Field(
        default=1.0,
        ge=0.0,
        description="Pause between jobs of one batch to stay under vendor rate limits"
    )

    MAX_KEY_PHRASES: int = Field(
        default=30,
        ge=1,
        le=200,
        description="Key phrases kept per story when the model over-produces"
    )

    # ===== Retry Policy =====
    RETRY_MAX_ATTEMPTS: int = Field(default=5, ge=1, le=20, description="Attempts per external call")
    RETRY_BASE_DELAY_SECONDS: float = Field(default=1.0, ge=0.0, description="First backoff delay")
    RETRY_MAX_DELAY_SECONDS: float = Field(default=8.0, ge=0.0, description="Backoff ceiling")

    RETRY_ON_PARSE_ERROR: bool = Field(
        default=True,
        description="Re-prompt the model when its output cannot be parsed as a story"
    )

    # ===== Triggers =====
    CRON_BATCH_LIMIT: int = Field(
        default=1,
        ge=1,
        le=100,
        description="Hard cap on jobs processed per scheduled run"
    )

    CRON_INTERVAL_MINUTES: int = Field(
        default=60,
        ge=1,
        description="Minutes between scheduled batch runs"
    )

    MANUAL_BATCH_LIMIT_MAX: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Hard cap on jobs processed per manual run"
    )

    GENERATE_AUDIO: bool = Field(
        default=False,
        description="Generate narration audio in scheduled runs"
    )

    @field_validator('GENERATE_AUDIO', 'RETRY_ON_PARSE_ERROR', mode='before')
    @classmethod
    def parse_bool_string(cls, v):
        """Parse boolean from string values (platform env vars are strings)."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False

    # ===== Application Settings =====
    ENVIRONMENT: str = Field(
        default="development",
        description="Environment mode: development or production"
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # ===== Computed Properties =====

    @property
    def can_generate_text(self) -> bool:
        """Check if story text generation is available."""
        return bool(self.SILICONFLOW_API_KEY and self.SILICONFLOW_STORY_MODEL)

    @property
    def r2_configured(self) -> bool:
        """Check if the audio bucket is fully configured."""
        return all([
            self.CLOUDFLARE_R2_ACCOUNT_ID,
            self.CLOUDFLARE_R2_ACCESS_KEY_ID,
            self.CLOUDFLARE_R2_SECRET_ACCESS_KEY,
            self.CLOUDFLARE_R2_BUCKET_NAME,
            self.CLOUDFLARE_R2_PUBLIC_URL,
        ])

    @property
    def can_generate_audio(self) -> bool:
        """Check if narration (TTS + upload) is available."""
        return bool(
            self.SILICONFLOW_API_KEY
            and self.SILICONFLOW_TTS_MODEL
            and self.r2_configured
        )

    def missing_settings(self, generate_audio: bool = False) -> list[str]:
        """Names of unset settings a (non dry-run) batch would need."""
        required = ["SILICONFLOW_API_KEY", "SILICONFLOW_STORY_MODEL"]
        if generate_audio:
            required += [
                "SILICONFLOW_TTS_MODEL",
                "CLOUDFLARE_R2_ACCOUNT_ID",
                "CLOUDFLARE_R2_ACCESS_KEY_ID",
                "CLOUDFLARE_R2_SECRET_ACCESS_KEY",
                "CLOUDFLARE_R2_BUCKET_NAME",
                "CLOUDFLARE_R2_PUBLIC_URL",
            ]
        return [name for name in required if not getattr(self, name)]


def cap_limit(requested: float | None, cap: int) -> int:
    """
    Clamp a trigger's requested batch size to [1, cap].

    The runner itself only enforces the lower bound; each trigger
    (scheduler, CLI) owns its own upper bound.
    """
    if requested is None:
        return min(1, cap)
    try:
        value = float(requested)
    except (TypeError, ValueError):
        return 1
    if math.isnan(value) or value < 1:
        return 1
    if math.isinf(value):
        return cap
    return min(math.floor(value), cap)


# Global configuration instance
# Import this in other modules: from storyhub.config import config
config = AppConfig()


# Validation on startup
if __name__ == "__main__":
    print("Configuration loaded successfully!")
    print(f"Database: {config.database_path}")
    print(f"Story model: {config.SILICONFLOW_STORY_MODEL or '(unset)'}")
    print(f"Text Generation: {'✓' if config.can_generate_text else '✗'}")
    print(f"Audio Generation: {'✓' if config.can_generate_audio else '✗'}")
    print(f"Cron batch limit: {config.CRON_BATCH_LIMIT} every {config.CRON_INTERVAL_MINUTES} min")
