from datetime import timedelta, timezone, tzinfo
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

from clinic_monitor.schemas import EngineOptions


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database holding patients and the two assistant log tables
    DATABASE_URL: str

    LOG_LEVEL: str

    # Evolution (WhatsApp provider) API
    EVOLUTION_API_URL: str
    EVOLUTION_API_KEY: str
    EVOLUTION_INSTANCE: str = "elite-shahd"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Reconciliation tunables
    PROVIDER_WINDOW_LIMIT: int = 1000
    FINGERPRINT_LENGTH: int = 100
    DEDUP_TOLERANCE_SECONDS: int = 60
    FINGERPRINT_CACHE_TTL_SECONDS: int = 300
    BACKFILL_BATCH_SIZE: int = 5
    ASSISTANT_LANGUAGE: str = "ar"
    OUTGOING_SENDER_LABEL: str = "Clinic"
    RESTRICT_TO_LOGGED_CONTACTS: bool = False

    # Clinic local time, for the busiest-hours histogram (Gulf Standard Time)
    ANALYTICS_UTC_OFFSET_HOURS: float = 4.0

    def engine_options(self) -> EngineOptions:
        """Snapshot of the tunables the reconciliation engine needs."""
        return EngineOptions(
            instance_name=self.EVOLUTION_INSTANCE,
            provider_window_limit=self.PROVIDER_WINDOW_LIMIT,
            fingerprint_length=self.FINGERPRINT_LENGTH,
            dedup_tolerance_ms=self.DEDUP_TOLERANCE_SECONDS * 1000,
            cache_ttl_seconds=self.FINGERPRINT_CACHE_TTL_SECONDS,
            backfill_batch_size=self.BACKFILL_BATCH_SIZE,
            locale=self.ASSISTANT_LANGUAGE,
            outgoing_sender_label=self.OUTGOING_SENDER_LABEL,
            restrict_to_logged_contacts=self.RESTRICT_TO_LOGGED_CONTACTS,
        )

    def analytics_timezone(self) -> tzinfo:
        return timezone(timedelta(hours=self.ANALYTICS_UTC_OFFSET_HOURS))


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
