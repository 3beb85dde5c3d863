from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    The preference and reset knobs are deployment policies: pick one value
    per deployment and every operation applies it uniformly.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Shared secret expected in the X-API-Key header - required from .env
    API_KEY: str

    # "upsert": transitions create the preference row when missing
    # "strict": transitions fail with not_found when no row exists
    PREFERENCE_POLICY: Literal["upsert", "strict"] = "upsert"

    # Create the AWAITING preference row together with the contact
    EAGER_PREFERENCE: bool = True

    # "empty": GET /api/contacts/{phone} answers 200 {"data": null}
    # "error": it answers 404
    CONTACT_NOT_FOUND_MODE: Literal["empty", "error"] = "empty"

    # "flagged": reset touches rows with intro_sent_today set
    # "all": reset touches every row not already at the reset target
    RESET_SCOPE: Literal["flagged", "all"] = "flagged"

    # Batch reset also puts contacts back into AWAITING
    RESET_OPT_STATE: bool = False

    # Length of issued identifiers
    ID_LENGTH: int = Field(default=12, ge=8, le=32)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
