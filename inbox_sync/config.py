import os

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class SyncSettings(BaseModel):

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "inbox"
    redis_url: str | None = None
    push_enabled: bool = True
    # intervals match the storefront inbox: list every 5s, open thread every 3s
    index_poll_interval_ms: int = Field(5000, gt=0)
    thread_poll_interval_ms: int = Field(3000, gt=0)
    fetch_timeout_ms: int = Field(10000, gt=0)
    heartbeat_timeout_ms: int = Field(30000, gt=0)
    heartbeat_interval_ms: int = Field(10000, gt=0)
    resubscribe_backoff_ms: int = Field(1000, ge=0)
    resubscribe_backoff_max_ms: int = Field(30000, ge=0)

    @classmethod
    def from_env(cls) -> "SyncSettings":
        values = {
            "mongo_url": os.getenv("MONGO_URL"),
            "mongo_db": os.getenv("MONGO_DB"),
            "redis_url": os.getenv("REDIS_URL"),
            "index_poll_interval_ms": os.getenv("INDEX_POLL_INTERVAL_MS"),
            "thread_poll_interval_ms": os.getenv("THREAD_POLL_INTERVAL_MS"),
            "fetch_timeout_ms": os.getenv("FETCH_TIMEOUT_MS"),
            "heartbeat_timeout_ms": os.getenv("HEARTBEAT_TIMEOUT_MS"),
            "heartbeat_interval_ms": os.getenv("HEARTBEAT_INTERVAL_MS"),
            "resubscribe_backoff_ms": os.getenv("RESUBSCRIBE_BACKOFF_MS"),
            "resubscribe_backoff_max_ms": os.getenv("RESUBSCRIBE_BACKOFF_MAX_MS"),
        }
        values = {k: v for k, v in values.items() if v}
        return cls(push_enabled=_env_bool("INBOX_PUSH_ENABLED", True), **values)

    def backoff_seconds(self, attempt: int) -> float:
        delay = min(self.resubscribe_backoff_max_ms, self.resubscribe_backoff_ms * max(attempt, 1))
        return delay / 1000.0


_settings: SyncSettings | None = None


def get_settings() -> SyncSettings:
    global _settings
    if _settings is None:
        _settings = SyncSettings.from_env()
    return _settings
