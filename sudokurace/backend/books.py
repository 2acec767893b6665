"""Book-of-the-month loader with a device-local cache keyed by year and month."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable

from .client import ServerStorage, ServerStorageError
from .models import BookOfTheMonth
from .online import OnlineStatus
from .storage import KeyValueStorage, read_json, write_json

logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = "You are offline, please check your connection"
FAILED_TO_LOAD_MESSAGE = "Failed to load puzzle book"

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_key(now: datetime) -> str:
    current = now.astimezone(timezone.utc)
    return f"sudoku_book_{current.year}_{MONTH_NAMES[current.month - 1]}"


class BookOfTheMonthLoader:
    def __init__(
        self,
        server: ServerStorage,
        storage: KeyValueStorage,
        online: OnlineStatus,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._server = server
        self._storage = storage
        self._online = online
        self._clock = clock
        self.book: BookOfTheMonth | None = None
        self.is_loading = False
        self.error: str | None = None

    def month_key(self) -> str:
        return month_key(self._clock())

    def load_cached(self) -> BookOfTheMonth | None:
        key = self.month_key()
        loaded = read_json(self._storage, key)
        if not loaded.ok:
            logger.warning("Failed to load cached book data: %s", loaded.error)
            return None
        if loaded.value is None:
            return None
        try:
            return BookOfTheMonth.from_dict(loaded.value)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Failed to load cached book data under %s: %s", key, exc)
            return None

    def _save_cached(self, book: BookOfTheMonth) -> None:
        key = self.month_key()
        saved = write_json(self._storage, key, book.to_dict())
        if not saved.ok:
            logger.warning("Failed to save cached book data: %s", saved.error)
            return
        self.cleanup(keep=key)

    def cleanup(self, keep: str | None = None) -> None:
        """Drop cached books of other months of this year and of every month of last year."""
        keep = keep or self.month_key()
        year = self._clock().astimezone(timezone.utc).year
        for candidate_year in (year, year - 1):
            for name in MONTH_NAMES:
                key = f"sudoku_book_{candidate_year}_{name}"
                if key == keep:
                    continue
                removed = self._storage.remove(key)
                if not removed.ok:
                    logger.warning("Failed to remove cached book %s: %s", key, removed.error)

    async def fetch(self) -> BookOfTheMonth | None:
        if self.book is not None or self.is_loading:
            return self.book

        cached = self.load_cached()
        if cached is not None:
            self.book = cached
            return cached

        if not self._online.is_online:
            self.error = OFFLINE_MESSAGE
            return None

        self.is_loading = True
        self.error = None
        try:
            book = await self._server.get_book_of_the_month()
        except ServerStorageError as exc:
            logger.error("Failed to load puzzle book: %s", exc)
            self.error = FAILED_TO_LOAD_MESSAGE
            return None
        finally:
            self.is_loading = False

        if book is None:
            self.error = FAILED_TO_LOAD_MESSAGE
            return None
        self.book = book
        self._save_cached(book)
        return book

    def clear(self) -> None:
        self.book = None
        self.error = None
        removed = self._storage.remove(self.month_key())
        if not removed.ok:
            logger.warning("Failed to clear cached book data: %s", removed.error)
