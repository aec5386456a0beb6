"""Engine settings loaded from environment variables (prefix ``PIM_MAPPING_``)."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PIM_MAPPING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # AI suggestions
    ai_apply_threshold: float = Field(
        default=0.9,
        ge=0,
        le=1,
        description="Minimum similarity for bulk-applying AI suggestions",
    )
    ai_displace_confirmed: bool = Field(
        default=True,
        description="Allow bulk AI apply to displace a confirmed mapping holding the same target",
    )

    # Default-category validation
    validation_per_page: int = Field(default=50, ge=1, le=200)
    validation_max_per_page: int = Field(default=200, ge=1)

    # Import reporting
    import_warning_preview: int = Field(
        default=5,
        ge=0,
        description="Number of warnings shown in the import summary message",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
