"""
Configuration Management
Pydantic Settings with strict validation
"""
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings, read from BTO_* environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="BTO_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "BTO Allocation Engine"

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON_FORMAT: bool = False
    LOG_FILE: Optional[str] = Field(
        default=None,
        description="Optional path of a rotating log file sink",
    )

    # Persistence boundary
    SNAPSHOT_PATH: Optional[str] = Field(
        default=None,
        description="JSON snapshot loaded at start-up and re-exported on demand",
    )
    HIDE_CLOSED_PROJECTS_ON_LOAD: bool = True

    # Eligibility
    SMALL_FLAT_TYPE: str = "2-Room"
    SINGLE_MIN_AGE: int = Field(default=35, ge=0)
    MARRIED_MIN_AGE: int = Field(default=21, ge=0)

    # Project administration
    MAX_OFFICER_SLOTS_LIMIT: int = Field(default=10, ge=1)
    ENFORCE_APPLICATION_WINDOW: bool = True

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid"""
        allowed = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(allowed)}")
        return level


def get_settings() -> Settings:
    return Settings()
