"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.

The API process and the sync workers share this module; each only reads the
groups it needs.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── TiDB / MySQL (durable record store) ────────────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "feedledger"
    # Full SQLAlchemy URL; overrides the tidb_* parts when set (tests use
    # sqlite+aiosqlite here)
    database_url: str = ""

    @property
    def tidb_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Counter store ──────────────────────────────────────────────────────
    counter_store_backend: str = "redis"     # 'redis' | 'memory'
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_socket_timeout: float = 1.0        # fail fast on the write path

    # ── Sync queue ─────────────────────────────────────────────────────────
    sync_queue_backend: str = "kafka"        # 'kafka' | 'memory'
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_prefix: str = "ledger"
    kafka_topic_dead_letter: str = "ledger.dead-letter"
    kafka_consumer_group_prefix: str = "sync-worker"
    # Topics this worker process consumes; empty means all of them
    worker_topics: list[str] = []

    # ── Retry policy ───────────────────────────────────────────────────────
    sync_max_attempts: int = 3
    sync_backoff_base_seconds: float = 2.0
    sync_backoff_max_seconds: float = 30.0
    update_feed_dedupe_ttl: int = 30         # seconds a coalesced job is held

    # ── Feed ───────────────────────────────────────────────────────────────
    feed_page_size: int = 20
    feed_max_page_size: int = 100
    feed_candidate_limit: int = 500          # candidates scored per request
    feed_default_time_range_days: int = 36500
    feed_trending_hours: int = 24
    feed_cache_ttl: int = 300                # 5 min per cached page
    feed_stale_ttl: int = 3600               # last-good copy for degraded reads
    feed_query_timeout_seconds: float = 2.0
    feed_scope_max_size: int = 1000          # entries kept per scope ZSET

    # ── Notifications ──────────────────────────────────────────────────────
    # Push gateway; notifications are only logged when unset
    notification_service_url: str = ""
    notification_timeout_seconds: float = 2.0

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    tracing_enabled: bool = True
    service_name: str = "feedledger"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
