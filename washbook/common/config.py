"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    idempotency_ttl_seconds: int = 86400

    public_base_url: str = "http://localhost:3000"
    stripe_secret_key: str = ""
    stripe_api_version: str = "2023-10-16"
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    currency: str = "usd"

    # Card validation: tiny charge + instant refund after the setup intent.
    card_validation_enabled: bool = False
    card_validation_amount_cents: int = 1

    # Gateway hard limit is 100/s; stay below it for unrelated traffic.
    quota_max_requests_per_second: int = 95

    breaker_failure_threshold: int = 5
    breaker_success_threshold: int = 3
    breaker_timeout_seconds: float = 60.0
    breaker_monitoring_window_seconds: float = 120.0
    payment_breaker_failure_threshold: int = 3
    payment_breaker_success_threshold: int = 2
    payment_breaker_timeout_seconds: float = 30.0
    payment_breaker_monitoring_window_seconds: float = 60.0

    saga_stale_after_seconds: int = 900

    payment_auth_enabled: bool = False
    payment_auth_percentage: int = Field(default=0, ge=0, le=100)
    payment_auth_test_users: str = ""
    payment_auth_salt: str = "payment-authorization"

    service_timezone: str = "America/New_York"
    slot_default_max_units: int = 10
    slot_lead_time_hours: int = 6
    slot_populate_days: int = 14

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def card_validation_amount(self) -> int:
        """Validation charge in cents, or 0 when validation is switched off."""

        return self.card_validation_amount_cents if self.card_validation_enabled else 0


settings = CommonSettings()
