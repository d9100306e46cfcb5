"""Pipeline configuration using pydantic-settings."""

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = False

    # OCR engine
    ocr_backend: str = "google_vision"  # google_vision | tesseract
    ocr_language: str = "zh-TW"
    preprocess_max_dimension: int = 2000
    service_account_json: str = ""
    tesseract_cmd: str = ""

    # Result cache / history
    cache_capacity: int = 100
    cache_validity_hours: int = 24
    history_retention_days: int = 30

    # Credential vault
    credential_master_key: SecretStr = SecretStr("")
    credential_storage_path: str = ""  # Empty = in-memory storage

    # AI parsing service
    ai_service_name: str = "openai"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-3.5-turbo"
    openai_temperature: float = 0.1
    openai_max_tokens: int = 1000
    openai_timeout_seconds: float = 30.0
    ai_timeout_seconds: float = 10.0  # Applied by the orchestrator around each AI call
    max_ai_text_length: int = 10000

    # AI circuit breaker
    ai_failure_threshold: int = 5
    ai_recovery_seconds: int = 300

    # Orchestration
    batch_concurrency: int = 1  # 1 = sequential
    max_batch_concurrency: int = 3
    low_confidence_threshold: float = 0.7
    enable_hybrid_merge: bool = True

    # Security gate
    max_content_size: int = 100_000
    max_control_char_ratio: float = 0.2

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def has_master_key(self) -> bool:
        """Whether a vault master key is configured."""
        return bool(self.credential_master_key.get_secret_value())


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
