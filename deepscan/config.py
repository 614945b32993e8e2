from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str) -> str:
    value = os.getenv(f"DEEPSCAN_{name}", "").strip()
    return value or default


class Settings(BaseModel):
    database_url: str = Field(
        default_factory=lambda: _env("DATABASE_URL", f"sqlite:///{DATA_DIR / 'deepscan.db'}")
    )
    db_timeout_seconds: float = Field(default_factory=lambda: float(_env("DB_TIMEOUT_SECONDS", "10.0")), gt=0)

    scoring_workers: int = Field(default_factory=lambda: int(_env("SCORING_WORKERS", "4")), ge=1)
    max_concurrent_sessions: int = Field(default_factory=lambda: int(_env("MAX_CONCURRENT_SESSIONS", "4")), ge=1)

    learning_rate: float = Field(default_factory=lambda: float(_env("LEARNING_RATE", "0.05")), gt=0)
    max_weight_step: float = Field(default_factory=lambda: float(_env("MAX_WEIGHT_STEP", "0.05")), gt=0)
    weight_retry_attempts: int = Field(default_factory=lambda: int(_env("WEIGHT_RETRY_ATTEMPTS", "5")), ge=1)

    stale_session_minutes: float = Field(default_factory=lambda: float(_env("STALE_SESSION_MINUTES", "15")), gt=0)
    log_level: str = Field(default_factory=lambda: _env("LOG_LEVEL", "INFO").upper())

    def ensure_directories(self) -> None:
        if self.database_url.startswith("sqlite:///") and ":memory:" not in self.database_url:
            Path(self.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
