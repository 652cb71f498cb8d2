"""
Settings for the transcription core.

All policy constants of the pipeline (strategy threshold, chunk sizes,
concurrency, timeouts, cache sizing) live here so deployments can tune them
through environment variables or a .env file without code changes.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeploymentMode(str, Enum):
    """Where the service is running."""
    LOCAL = "LOCAL"
    DEVELOPMENT = "DEVELOPMENT"
    PRODUCTION = "PRODUCTION"


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Application settings loaded from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Deployment
    deployment_mode: DeploymentMode = DeploymentMode.LOCAL
    log_level: LogLevel = LogLevel.INFO

    # Storage
    database_url: str = "sqlite+aiosqlite:///data/transcription_cache.db"
    work_dir: Path = Path("temp")
    upload_storage_path: Path = Path("uploads")

    # Speech-to-text provider
    speech_provider: str = Field(default="openai", description="openai, google or whisper_local")
    openai_api_key: Optional[str] = None
    openai_transcribe_model: str = "whisper-1"
    google_api_key: Optional[str] = None
    whisper_model: str = "base"

    # Strategy selection
    chunking_threshold_seconds: int = 1200
    unknown_duration_seconds: int = 1200
    host_transcript_enabled: bool = True
    fallback_to_standard_on_split_failure: bool = True

    # Chunking
    video_chunk_duration_seconds: int = 600
    recorded_chunk_duration_seconds: int = 300
    segment_bitrate: str = "48k"
    segment_sample_rate: int = 16000
    silence_threshold_db: int = -35
    split_timeout_seconds: int = 900

    # Concurrent execution
    max_concurrent_segments: int = 3
    segment_timeout_seconds: float = 150.0
    standard_timeout_seconds: float = 180.0
    provider_max_retries: int = 1
    provider_retry_delay: float = 1.0

    # Acquisition
    audio_max_filesize: str = "200M"
    metadata_timeout_seconds: float = 60.0
    download_timeout_seconds: float = 900.0

    # Cache and locks
    memory_cache_capacity: int = 256
    durable_cache_max_age_hours: int = 24 * 30
    lock_wait_seconds: float = 0.0
    lock_per_principal: bool = True

    @field_validator("max_concurrent_segments")
    @classmethod
    def _at_least_one_worker(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_concurrent_segments must be >= 1")
        return value

    @field_validator("video_chunk_duration_seconds", "recorded_chunk_duration_seconds")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("chunk duration must be positive")
        return value

    @field_validator("speech_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = value.lower()
        if value not in ("openai", "google", "whisper_local"):
            raise ValueError(f"Unknown speech provider: {value}")
        return value


@lru_cache()
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment again."""
    get_settings.cache_clear()
    global settings
    settings = get_settings()
    return settings


def is_development() -> bool:
    return get_settings().deployment_mode in (DeploymentMode.LOCAL, DeploymentMode.DEVELOPMENT)


def is_production() -> bool:
    return get_settings().deployment_mode == DeploymentMode.PRODUCTION


def get_database_url() -> str:
    return get_settings().database_url


def get_work_dir() -> Path:
    """Return the shared temporary work directory, creating it if needed."""
    work_dir = get_settings().work_dir
    work_dir.mkdir(parents=True, exist_ok=True)
    return work_dir


settings = get_settings()
