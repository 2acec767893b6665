"""Daily quota gate for premium actions (undo, grid check) on free accounts."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from enum import Enum
import logging
from typing import Callable

from .config import DailyLimits
from .models import DailyActionData
from .storage import KeyValueStorage, read_json, write_json

logger = logging.getLogger(__name__)

STORAGE_KEY = "daily-action-counter"


class DailyAction(str, Enum):
    UNDO = "undo"
    CHECK_GRID = "checkGrid"


class DailyActionLimiter:
    """Counts today's uses per action against a quota.

    The counters live in device storage under a single key and are keyed to
    the device-local calendar date. A read on a new day reports zeroed
    counters without anyone having to announce the day change. Storage is
    best effort: unreadable state counts as a fresh day and failed writes are
    logged and dropped so the calling action never fails because of them.

    ``can_use`` and ``increment`` are separate calls with no lock between
    them; a rapid double tap may count twice.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        limits: DailyLimits | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._storage = storage
        self._limits = limits or DailyLimits()
        self._today = today

    def _today_string(self) -> str:
        return self._today().isoformat()

    def _fresh(self) -> DailyActionData:
        return DailyActionData(date=self._today_string())

    def read(self) -> DailyActionData:
        loaded = read_json(self._storage, STORAGE_KEY)
        if not loaded.ok:
            logger.warning("Error reading daily action data: %s", loaded.error)
            return self._fresh()
        if loaded.value is None:
            return self._fresh()
        try:
            data = DailyActionData.from_dict(loaded.value)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Discarding malformed daily action data: %s", exc)
            return self._fresh()
        if data.date != self._today_string():
            return self._fresh()
        return data

    def quota(self, action: DailyAction) -> int:
        if action == DailyAction.UNDO:
            return self._limits.undo
        return self._limits.check_grid

    def count(self, action: DailyAction) -> int:
        data = self.read()
        if action == DailyAction.UNDO:
            return data.undo_count
        return data.check_grid_count

    def can_use(self, action: DailyAction) -> bool:
        return self.count(action) < self.quota(action)

    def remaining(self, action: DailyAction) -> int:
        return max(0, self.quota(action) - self.count(action))

    def increment(self, action: DailyAction) -> int:
        data = self.read()
        if action == DailyAction.UNDO:
            data = replace(data, undo_count=data.undo_count + 1)
            new_count = data.undo_count
        else:
            data = replace(data, check_grid_count=data.check_grid_count + 1)
            new_count = data.check_grid_count
        saved = write_json(self._storage, STORAGE_KEY, data.to_dict())
        if not saved.ok:
            logger.warning("Error saving daily action data: %s", saved.error)
        return new_count
