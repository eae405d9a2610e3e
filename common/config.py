from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings."""

    # Provider API Keys
    tavily_api_key: str = ""
    serper_api_key: str = ""
    brave_api_key: str = ""
    search_engines: str = "tavily,serper,brave"  # adapters built by default_providers()

    # Cache Store
    cache_dir: str = "data/search_cache"  # durable tier, one JSON file per key
    memory_max_entries: int = 1024  # in-process LRU tier capacity
    index_rebuild_interval_seconds: float = 300.0  # 5 minutes
    max_query_length: int = 500  # raw queries are truncated before normalization

    # Provider calls
    provider_timeout_seconds: float = 20.0  # default when a provider policy has none
    provider_max_workers: int = 8
    circuit_breaker_failures: int = 3
    circuit_breaker_reset_seconds: float = 60.0

    # Batch dispatch
    max_concurrency: int = 5  # groups resolved in parallel per batch

    # Quota / budget
    quota_state_path: str = ""  # optional JSON file for quota counters
    quota_attempt_id_history: int = 10000  # committed attempt ids kept for idempotency

    # Metrics
    metrics_retention_days: int = 30
    metrics_events_path: str = ""  # optional JSONL event log
    metrics_history_path: str = ""  # optional JSONL file for persisted summaries

    # Logging Config
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_file: str = "logs/search_cache.log"
    log_max_bytes: int = 10485760  # 10MB
    log_backup_count: int = 5
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
    enable_file_logging: bool = False
    enable_json_logging: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def search_engines_list(self) -> List[str]:
        """Parse search engines string into list."""
        return [e.strip().lower() for e in self.search_engines.split(",") if e.strip()]

    @property
    def quota_state_file(self) -> Optional[str]:
        return self.quota_state_path.strip() or None


settings = Settings()
