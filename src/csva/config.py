"""Configuration management for csva."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ApiKeyNotConfiguredError
from .logging_utils import LogProfile, configure_logging

DEFAULT_MODEL = "anthropic/claude-opus-4.5"
OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CSVA_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Model
    openrouter_api_key: str | None = Field(None, description="API key for OpenRouter")
    model: str = Field(default=DEFAULT_MODEL, description="Model name routed by OpenRouter")
    api_base: str = Field(default=OPENROUTER_API_BASE, description="OpenAI-compatible API base URL")
    max_tokens: int = Field(default=1024, description="Maximum tokens per model reply")
    app_url: str = Field(default="http://localhost:3000", description="Sent as HTTP-Referer to the model router")

    # Orchestration
    max_iterations: int = Field(default=10, description="Maximum number of model calls per turn")
    model_timeout_seconds: float = Field(default=60.0, description="Timeout for one model call")
    tool_timeout_seconds: float = Field(default=30.0, description="Timeout for one tool execution")
    system_prompt: str | None = Field(None, description="Override for the agent system instruction")
    context_results: int = Field(default=3, description="Knowledge entries added as retrieved context")

    # Persistence
    database_path: Path = Field(default=Path("csva.db"), description="SQLite database file")
    persist_retries: int = Field(default=2, description="Retries for a failed store write")
    session_retention_days: int = Field(default=30, description="Age after which sessions are purged")

    # Queue
    webhook_url: str | None = Field(None, description="Job consumer URL; in-process queue when unset")
    webhook_secret: str = Field(default="", description="HMAC secret shared with the job consumer")
    queue_retries: int = Field(default=3, description="Delivery attempts for one job")

    # Tools
    tavily_api_key: str | None = Field(None, description="Tavily web search API key")

    # Speech
    speech_enabled: bool = Field(default=False, description="Stream synthesized audio after each answer")
    elevenlabs_api_key: str | None = Field(None, description="ElevenLabs API key")
    elevenlabs_voice_id: str = Field(default="pNInz6obpgDQGcFmaJgB", description="ElevenLabs voice")
    elevenlabs_model_id: str = Field(default="eleven_flash_v2_5", description="ElevenLabs model")
    audio_chunk_bytes: int = Field(default=16_384, description="Bytes per audio:chunk frame")
    audio_queue_size: int = Field(default=8, description="Buffered audio frames between synth and publish")
    deepgram_api_key: str | None = Field(None, description="Deepgram API key; voice input is disabled without it")
    deepgram_model: str = Field(default="nova-2", description="Deepgram transcription model")
    deepgram_language: str = Field(default="en", description="Language of voice input")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: LogProfile = Field(default="default", description="Log profile (default or chat)")

    def require_openrouter_key(self) -> str:
        if not self.openrouter_api_key:
            raise ApiKeyNotConfiguredError("CSVA_OPENROUTER_API_KEY is not set")
        return self.openrouter_api_key


def get_settings(**overrides: object) -> Settings:
    """Get application settings and configure logging for them.

    Args:
        overrides: Field values taking precedence over the environment

    Returns:
        Settings instance
    """
    settings = Settings(**overrides)  # type: ignore[arg-type]
    configure_logging(profile=settings.log_profile, level=settings.log_level)
    return settings
