"""
Configuration management for the job board service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from service_commons.config import (
    REDACTION_MARKER,
    create_settings_loader,
    get_safe_model_config,
)
from service_commons.config import (
    get_config_path as resolve_config_path,
)

if TYPE_CHECKING:
    from pathlib import Path


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_jws_path: str
    timeout_seconds: int


class PaymentProcessorConfig(BaseModel):
    """External payment processor connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    api_key: str
    webhook_secret: str = Field(min_length=32)
    currency: str
    timeout_seconds: float
    authorize_path: str
    capture_path: str
    transfer_path: str
    refund_path: str
    setup_intent_path: str
    confirm_setup_intent_path: str
    detach_payment_method_path: str


class RetryConfig(BaseModel):
    """Bounded exponential backoff for transient processor failures."""

    model_config = ConfigDict(extra="forbid")
    max_attempts: int = Field(ge=1)
    base_delay_seconds: float = Field(ge=0)
    max_delay_seconds: float = Field(ge=0)


class EscrowConfig(BaseModel):
    """Escrow fee and payment amount bounds."""

    model_config = ConfigDict(extra="forbid")
    fee_rate: Decimal = Field(ge=0, lt=1)
    min_payment_amount: Decimal = Field(gt=0)
    max_payment_amount: Decimal = Field(gt=0)


class CancellationConfig(BaseModel):
    """Refund escalation configuration."""

    model_config = ConfigDict(extra="forbid")
    max_refund_rounds: int = Field(ge=1)


class PlatformConfig(BaseModel):
    """Platform operator identity."""

    model_config = ConfigDict(extra="forbid")
    agent_id: str


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class LimitsConfig(BaseModel):
    """Field length and count limits."""

    model_config = ConfigDict(extra="forbid")
    max_title_length: int
    max_description_length: int
    max_tasks_per_job: int
    max_message_length: int
    max_dispute_description_length: int


class EventsConfig(BaseModel):
    """Job-changed notification configuration."""

    model_config = ConfigDict(extra="forbid")
    queue_size: int = Field(ge=1)
    keepalive_seconds: float = Field(gt=0)


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    payment_processor: PaymentProcessorConfig
    retry: RetryConfig
    escrow: EscrowConfig
    cancellation: CancellationConfig
    platform: PlatformConfig
    request: RequestConfig
    limits: LimitsConfig
    events: EventsConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    return resolve_config_path(
        env_var_name="CONFIG_PATH",
        default_filename="config.yaml",
    )


get_settings, clear_settings_cache = create_settings_loader(Settings, get_config_path)  # nosemgrep


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return get_safe_model_config(get_settings(), REDACTION_MARKER)
