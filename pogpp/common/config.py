"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Policy values (duplicate
window, accuracy threshold, category space) are tunables, not invariants.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    ipfs_api_url: str = "http://ipfs:5001"
    ipfs_timeout_seconds: float = 10.0
    ledger_rpc_url: str = "https://rpc.gnosischain.com"
    ledger_contract_address: str = ""
    ledger_private_key: str = ""
    ledger_chain_id: int = 100
    ledger_timeout_seconds: float = 10.0
    ledger_receipt_timeout_seconds: float = 120.0
    ledger_from_block: int = 0

    visit_duplicate_window_minutes: int = 30
    max_gps_accuracy_meters: float = 100.0
    max_clock_skew_seconds: int = 300
    badge_category_space: int = 10_000
    challenge_ttl_seconds: int = 300
    rate_limit_per_minute: int = 30
    collaborator_max_retries: int = 3
    collaborator_backoff_seconds: float = 0.5
    pending_claim_stale_seconds: int = 300
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
