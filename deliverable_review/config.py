"""
Configuration management for the deliverable review service.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Deliverable Review")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Database
    database_url: str = Field(default="sqlite:///./deliverable_review.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")

    # Notifications
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Endpoint that receives transition events. Unset = events stay in-process.",
    )
    notification_timeout_seconds: float = Field(default=5.0)
    notification_queue_size: int = Field(default=1000)

    # Workflow definitions
    templates_file: Optional[str] = Field(
        default=None,
        description="JSON file with extra workflow and checklist templates.",
    )
    role_directory_file: Optional[str] = Field(
        default=None,
        description="JSON file mapping role names to approver identities.",
    )

    # Workflow policy
    resubmission_policy: Literal[
        "allow_same_version", "require_change", "require_new_version"
    ] = Field(default="require_change")
    revision_reentry: Literal["first_level", "rejected_level"] = Field(
        default="first_level"
    )


@lru_cache
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
