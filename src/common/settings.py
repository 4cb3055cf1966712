from typing import Dict, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AnyUrl
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # --- core -----------------------------------------------------------
    project_name: str = "Reading‑Intervals‑Tracker"
    service_name: str = Field(
        os.getenv("SERVICE_NAME", "reading_api"), validation_alias="SERVICE_NAME"
    )

    # Database configuration with flexible host
    db_host: str = Field(
        "postgres", validation_alias="DB_HOST"
    )  # postgres (Docker) or localhost (local)
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("books", validation_alias="DB_USER")
    db_password: str = Field("books", validation_alias="DB_PASSWORD")
    db_name: str = Field("books", validation_alias="DB_NAME")

    # Legacy DB_URL support (for backward compatibility)
    legacy_db_url: AnyUrl | None = Field(None, validation_alias="DB_URL")

    # Database connection pool settings
    db_pool_size: int = Field(10, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(20, validation_alias="DB_MAX_OVERFLOW")
    db_statement_timeout: float = Field(5.0, validation_alias="DB_STATEMENT_TIMEOUT")

    # Kafka configuration with flexible host
    kafka_host: str = Field(
        "kafka", validation_alias="KAFKA_HOST"
    )  # kafka (Docker) or localhost (local)
    kafka_port: int = Field(9092, validation_alias="KAFKA_PORT")
    # Legacy KAFKA_BROKERS support (for backward compatibility)
    legacy_kafka_bootstrap: str | None = Field(None, validation_alias="KAFKA_BROKERS")
    queue_timeout: float = Field(2.0, validation_alias="QUEUE_TIMEOUT")

    # Redis - use redis:6379 for Docker, localhost:6379 for local
    redis_url: str = Field(
        os.getenv("REDIS_URL", "redis://redis:6379/0"), validation_alias="REDIS_URL"
    )
    redis_max_connections: int = Field(20, validation_alias="REDIS_MAX_CONNECTIONS")
    cache_timeout: float = Field(1.0, validation_alias="CACHE_TIMEOUT")

    # Ranking cache ---------------------------------------------------------
    cache_enabled: bool = Field(True, validation_alias="CACHE_ENABLED")
    cache_ttl: int = Field(60, validation_alias="CACHE_TTL")  # seconds
    top_books_cache_prefix: str = Field("top_books", validation_alias="TOP_BOOKS_CACHE_PREFIX")
    top_books_default_limit: int = Field(5, validation_alias="TOP_BOOKS_DEFAULT_LIMIT")
    top_books_max_limit: int = Field(100, validation_alias="TOP_BOOKS_MAX_LIMIT")
    # Invalidated one by one when the cache backend cannot enumerate keys
    top_books_well_known_limits: List[int] = Field(
        [1, 3, 5, 10, 20, 50, 100], validation_alias="TOP_BOOKS_WELL_KNOWN_LIMITS"
    )
    ranking_aggregation: str = Field("merge", validation_alias="RANKING_AGGREGATION")  # merge|sql

    # Recompute jobs --------------------------------------------------------
    recompute_max_attempts: int = Field(3, validation_alias="RECOMPUTE_MAX_ATTEMPTS")
    recompute_backoff_delay: float = Field(1.0, validation_alias="RECOMPUTE_BACKOFF_DELAY")  # Base delay for exponential backoff (seconds)
    recompute_backoff_max: float = Field(30.0, validation_alias="RECOMPUTE_BACKOFF_MAX")  # Maximum delay between retries (seconds)
    recompute_job_delay: float = Field(0.0, validation_alias="RECOMPUTE_JOB_DELAY")

    # Admission control -----------------------------------------------------
    rate_limit: int = Field(100, validation_alias="RATE_LIMIT")
    rate_duration: int = Field(60, validation_alias="RATE_DURATION")  # seconds
    rate_limit_routes: Dict[str, Dict[str, int]] = Field(
        {
            "POST /books/reading-interval": {"limit": 20, "duration": 30},
            "POST /books/reading-intervals": {"limit": 20, "duration": 30},
        },
        validation_alias="RATE_LIMIT_ROUTES",
    )
    legacy_rate_limit_storage_uri: str | None = Field(
        None, validation_alias="RATE_LIMIT_STORAGE_URI"
    )

    # service ports (overridable) ---------------------------------------
    reading_api_port: int = 8000
    metrics_port: int = Field(9000, validation_alias="METRICS_PORT")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # If legacy DB_URL is provided, it takes precedence
        if self.legacy_db_url:
            self._db_url = str(self.legacy_db_url)
        else:
            self._db_url = f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

        # If legacy KAFKA_BROKERS is provided, it takes precedence
        if self.legacy_kafka_bootstrap:
            self._kafka_bootstrap = self.legacy_kafka_bootstrap
        else:
            self._kafka_bootstrap = f"{self.kafka_host}:{self.kafka_port}"

    @property
    def db_url(self) -> str:
        """Get the database URL, constructed from components or from legacy DB_URL"""
        return self._db_url

    @property
    def kafka_bootstrap(self) -> str:
        """Get the Kafka bootstrap servers, constructed from components"""
        return self._kafka_bootstrap

    # --- derived convenience values ---------------------------------------
    @property
    def async_db_url(self) -> str:
        """Return SQLAlchemy URL with asyncpg driver for PostgreSQL."""
        url = self.db_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://")
        if url.startswith("postgresql+psycopg2://"):
            return url.replace("postgresql+psycopg2://", "postgresql+asyncpg://")
        return url

    @property
    def rate_limit_storage_uri(self) -> str:
        """``limits`` storage URI; window counters share the Redis instance by default."""
        if self.legacy_rate_limit_storage_uri:
            return self.legacy_rate_limit_storage_uri
        if self.redis_url.startswith("redis://"):
            return self.redis_url.replace("redis://", "async+redis://", 1)
        return "async+memory://"


# singleton
SettingsInstance = Settings()
# pep-8 alias
settings = SettingsInstance
