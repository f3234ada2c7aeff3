"""
Application configuration using pydantic-settings.

Loads configuration from environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Remote live/parsing service (Gemini)
    google_api_key: str | None = Field(
        default=None,
        description="API key for the Gemini live and parsing models",
    )
    live_model: str = Field(
        default="gemini-2.5-flash-native-audio-preview-09-2025",
        description="Model used for the bidirectional live audio session",
    )
    parser_model: str = Field(
        default="gemini-2.5-flash",
        description="Model used to parse transcripts into order items",
    )
    parser_timeout: float = Field(
        default=20.0,
        description="Seconds before the transcript parser is treated as unavailable",
    )

    # Surrounding catalog/ordering app
    store_endpoint: str = Field(
        default="http://localhost:4000/api",
        description="Base URL of the catalog/ordering API",
    )
    store_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for catalog/ordering API requests",
    )

    # Audio capture
    capture_sample_rate: int = Field(
        default=16000,
        description="Microphone sample rate sent to the live session",
    )
    capture_block_size: int = Field(
        default=4096,
        description="Samples per captured frame",
    )
    capture_backpressure_frames: int = Field(
        default=32,
        description="Outbound frames allowed to queue before backpressure is reported",
    )

    # Audio playback
    playback_sample_rate: int = Field(
        default=24000,
        description="Sample rate of audio returned by the live session",
    )
    playback_channels: int = Field(
        default=1,
        description="Channel count of audio returned by the live session",
    )

    # Order confirmation feedback
    pulse_window_ms: int = Field(
        default=1500,
        description="How long an updated item stays marked as confirmed",
    )

    # Application
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
