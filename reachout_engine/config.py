"""
Configuration management for the ReachOut workflow engine.
"""

from typing import Optional

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
    app_name: str = Field(default="ReachOut Engine")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Database
    database_url: str = Field(default="sqlite:///./reachout_engine.db")

    # Scheduler
    scheduler_secret: str = Field(
        default="",
        description="Bearer token trusted callers must present. Empty = reject every call.",
    )
    scheduler_batch_size: int = Field(default=100)
    scheduler_max_batch_size: int = Field(default=500)
    message_sweep_batch_size: int = Field(default=50)
    max_node_iterations: int = Field(default=50)

    # Enrollment
    enrollment_max_batch_size: int = Field(default=1000)

    # Dispatch policy
    advance_on_send_failure: bool = Field(
        default=True,
        description="When false, a failed send fails the execution instead of advancing it.",
    )
    default_email_subject: str = Field(default="Message from ReachOut")
    default_from_name: str = Field(default="ReachOut")

    # Webhooks
    twilio_webhook_auth_token: Optional[str] = Field(default=None)
    sendgrid_webhook_public_key: Optional[str] = Field(default=None)
    public_base_url: Optional[str] = Field(
        default=None,
        description="External URL prefix Twilio signs against (e.g. https://reachout.example.com).",
    )
    insecure_skip_webhook_signatures: bool = Field(
        default=False,
        description="TEST ONLY. Accepts unsigned webhooks and logs a warning for each one.",
    )

    # Providers
    twilio_api_base: str = Field(default="https://api.twilio.com/2010-04-01")
    sendgrid_api_base: str = Field(default="https://api.sendgrid.com/v3")
    provider_timeout_seconds: float = Field(default=15.0)
    status_callback_url: Optional[str] = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
