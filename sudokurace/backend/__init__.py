"""Backend package for Sudoku Race session sync and scoring."""

from .config import BackendSettings, DailyLimits, load_settings
from .leaderboard import FriendsLeaderboardScore, build_leaderboard, username_from_members
from .limiter import DailyAction, DailyActionLimiter
from .reconcile import ReconciliationEngine, SyncAction, SyncStatus, decide_sync
from .scoring import SCORING_CONFIG, ScoringResult, calculate_user_score
from .session_store import LocalSessionStore
from .store import InMemorySessionRecordStore, PostgresSessionRecordStore, SessionRecordStore, create_store

__all__ = [
    "BackendSettings",
    "build_leaderboard",
    "calculate_user_score",
    "create_store",
    "DailyAction",
    "DailyActionLimiter",
    "DailyLimits",
    "decide_sync",
    "FriendsLeaderboardScore",
    "InMemorySessionRecordStore",
    "load_settings",
    "LocalSessionStore",
    "PostgresSessionRecordStore",
    "ReconciliationEngine",
    "SCORING_CONFIG",
    "ScoringResult",
    "SessionRecordStore",
    "SyncAction",
    "SyncStatus",
    "username_from_members",
]
