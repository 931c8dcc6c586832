"""Worker configuration, read once from the environment."""

import os
from dataclasses import dataclass

from .dose_events import DEFAULT_WINDOW_DAYS as DEFAULT_ADHERENCE_WINDOW_DAYS
from .dose_events import MAX_WINDOW_DAYS


def _env(name: str, default: str) -> str:
    return os.environ.get(f"PEPTRACK_{name}", default)


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            # LISTEN needs a session-mode connection; poolers in transaction
            # mode drop notifications.
            listen_database_url=_env("WORKER_LISTEN_DATABASE_URL", "") or database_url,
            poll_interval_seconds=float(_env("POLL_INTERVAL", "5.0")),
            batch_size=int(_env("BATCH_SIZE", "10")),
            max_retries=int(_env("MAX_RETRIES", "3")),
            health_port=int(_env("HEALTH_PORT", "8081")),
            log_format=_env("LOG_FORMAT", "json"),
        )


def adherence_window_days() -> int:
    """Trailing analysis window length (PEPTRACK_ADHERENCE_WINDOW_DAYS, 1..365)."""
    try:
        days = int(_env("ADHERENCE_WINDOW_DAYS", str(DEFAULT_ADHERENCE_WINDOW_DAYS)))
    except ValueError:
        return DEFAULT_ADHERENCE_WINDOW_DAYS
    return min(MAX_WINDOW_DAYS, max(1, days))
