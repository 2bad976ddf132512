"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Every key is read from ``PAYMENT__*``, e.g. ``PAYMENT__RETRY__MAX_ATTEMPTS=3``
or ``PAYMENT__LEDGER__BACKEND=redis``.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    # Upper bound for one adapter call, in seconds
    call: float = 30.0


class PaymentRetry(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_backoff: float = Field(default=0.2, ge=0)
    max_backoff: float = Field(default=5.0, ge=0)


class LedgerSettings(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    key_prefix: str = "payments:ledger"
    lock_timeout: int = 10
    lock_blocking_timeout: int = 5
    # Seconds to keep terminal records; None keeps them until purged
    retention_seconds: Optional[int] = None


class ReconciliationSettings(BaseModel):
    enabled: bool = False
    interval_seconds: int = 300
    # Only sweep records whose last attempt is at least this old
    min_age_seconds: int = 120
    batch_size: int = 100
    tenant_id: str = "system"


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_version: Optional[str] = None
    checkout_success_url: str = "https://example.com/payments/success"
    checkout_cancel_url: str = "https://example.com/payments/cancel"


class ExternalPaymentSettings(BaseModel):
    form_url: str = "https://payments.invalid/external"
    # Shared HMAC secret; without it notifications are accepted but unverified
    webhook_secret: Optional[str] = None


class PaymentSettings(BaseSettings):
    default_plugin: str = "__external_payment__"
    enabled_plugins: list[str] = Field(default_factory=lambda: ["__external_payment__"])
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    external: ExternalPaymentSettings = Field(default_factory=ExternalPaymentSettings)

    model_config = SettingsConfigDict(
        env_prefix="PAYMENT__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("enabled_plugins", mode="before")
    @classmethod
    def _split_plugins(cls, v):
        if isinstance(v, str) and not v.strip().startswith("["):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


payment_settings = PaymentSettings()
