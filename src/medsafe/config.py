"""Configuration management for the medsafe document pipeline."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "medsafe"
    postgres_password: str = "localdev"
    postgres_db: str = "medsafe"
    database_url_override: Optional[str] = None

    # Encryption (Fernet key, urlsafe base64)
    encryption_key: Optional[str] = None

    # Upload validation
    max_upload_bytes: int = 10 * 1024 * 1024
    accepted_content_types: list[str] = [
        "image/jpeg",
        "image/png",
        "image/tiff",
        "image/webp",
        "image/heic",
    ]

    # Extraction and parsing
    confidence_threshold: float = 0.6
    min_entities: int = 1
    tesseract_language: str = "eng"

    # Retry
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_multiplier: float = 2.0
    retry_max_delay_seconds: float = 8.0
    retry_jitter: float = 0.1

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 30.0

    # Timeouts
    extraction_timeout_seconds: float = 20.0
    lookup_timeout_seconds: float = 5.0
    stage_timeout_seconds: float = 120.0

    # Commit
    commit_attempts: int = 3

    # Interactions
    interaction_cache_ttl_seconds: float = 24 * 3600.0
    interaction_table_path: Optional[str] = None

    # Adherence
    low_adherence_threshold: float = 80.0

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Construct async database URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_prefix = "MEDSAFE_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
