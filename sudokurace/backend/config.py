"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class DailyLimits:
    """Free daily uses of premium-gated actions for non-subscribers."""

    undo: int = 2
    check_grid: int = 2


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    host: str
    port: int
    api_url: str
    storage_path: str | None
    session_retention_days: int
    sync_poll_seconds: int
    request_timeout: float
    daily_limits: DailyLimits = field(default_factory=DailyLimits)


def load_settings() -> BackendSettings:
    port_raw = os.getenv("SUDOKURACE_PORT", "8000")
    return BackendSettings(
        database_url=os.getenv("SUDOKURACE_DATABASE_URL"),
        host=os.getenv("SUDOKURACE_HOST", "127.0.0.1"),
        port=int(port_raw),
        api_url=os.getenv("SUDOKURACE_API_URL", "http://127.0.0.1:8000"),
        storage_path=os.getenv("SUDOKURACE_STORAGE_PATH"),
        session_retention_days=int(os.getenv("SUDOKURACE_SESSION_RETENTION_DAYS", "32")),
        sync_poll_seconds=int(os.getenv("SUDOKURACE_SYNC_POLL_SECONDS", "60")),
        request_timeout=float(os.getenv("SUDOKURACE_REQUEST_TIMEOUT", "10")),
        daily_limits=DailyLimits(
            undo=int(os.getenv("SUDOKURACE_UNDO_LIMIT", "2")),
            check_grid=int(os.getenv("SUDOKURACE_CHECK_GRID_LIMIT", "2")),
        ),
    )
