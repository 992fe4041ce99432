"""Central environment-driven settings for the settlement service.

The process loads this once at startup. Provider credentials that are left
empty keep the matching gateway out of the registry.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "settlepay"
    log_level: str = "INFO"
    database_url: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    outbox_publisher_enabled: bool = True

    # Gateway credentials
    stripe_secret_key: str = ""
    stripe_api_url: str = "https://api.stripe.com"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_account_number: str = ""
    razorpay_api_url: str = "https://api.razorpay.com"
    payoneer_api_username: str = ""
    payoneer_api_password: str = ""
    payoneer_program_id: str = ""
    payoneer_api_url: str = "https://api.sandbox.payoneer.com"
    wise_api_token: str = ""
    wise_profile_id: str = ""
    wise_api_url: str = "https://api.sandbox.transferwise.tech"

    # Webhook secrets (Wise signs with RSA, so this one is a public key PEM)
    stripe_webhook_secret: str = ""
    razorpay_webhook_secret: str = ""
    payoneer_webhook_secret: str = ""
    wise_webhook_public_key: str = ""
    stripe_signature_tolerance_seconds: int = 300
    webhook_retention_days: int = 30

    # Gateway call policy
    gateway_timeout_seconds: float = 10.0
    gateway_read_retries: int = 3
    gateway_retry_backoff_seconds: float = 0.5

    # Money
    platform_currency: str = "USD"
    platform_fee_percent: float = 20.0
    quote_ttl_seconds: int = 300
    quote_bucket_seconds: int = 60
    conversion_fee_bps: int = 50
    exchange_rate_url: str = ""

    # Scheduler
    scheduler_lock_lease_seconds: int = 900
    auto_payout_default_interval_days: int = 7

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
