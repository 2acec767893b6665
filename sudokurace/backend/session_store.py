"""Client-local working copies of puzzle sessions: answers, undo/redo and timer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from .limiter import DailyAction, DailyActionLimiter
from .models import Completion, PuzzleMetadata, ServerState, ServerStateResult, Timer
from .state import build_initial_state, elapsed_seconds, start_timer_session, stop_timer, touch_timer
from .storage import KeyValueStorage, read_json, write_json

logger = logging.getLogger(__name__)

KEY_PREFIX = "sudoku-"
TIMER_SUFFIX = "-timer"


def session_id_for(puzzle_id: str) -> str:
    return f"{KEY_PREFIX}{puzzle_id}"


def puzzle_id_for(session_id: str) -> str | None:
    if not session_id.startswith(KEY_PREFIX):
        return None
    return session_id[len(KEY_PREFIX):]


def _timer_key(puzzle_id: str) -> str:
    return f"{session_id_for(puzzle_id)}{TIMER_SUFFIX}"


def _to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _has_undo(copy: PuzzleCopy | None) -> bool:
    return copy is not None and len(copy.state.answer_stack) >= 2


@dataclass
class PuzzleCopy:
    puzzle_id: str
    state: ServerState
    last_updated: datetime
    timer: Timer | None = None
    redo_stack: list[Any] = field(default_factory=list)
    version: int = 0

    @property
    def session_id(self) -> str:
        return session_id_for(self.puzzle_id)

    def snapshot(self) -> ServerState:
        return replace(self.state, timer=self.timer)


class LocalSessionStore:
    """Owns the on-device copy of every puzzle the user has touched.

    Each mutation bumps the copy's ``version`` and notifies subscribers with
    the puzzle id. The reconciliation engine is the only caller of
    ``replace_from_server``.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        limiter: DailyActionLimiter,
        user_id: str = "",
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._storage = storage
        self._limiter = limiter
        self._user_id = user_id
        self._clock = clock
        self._copies: dict[str, PuzzleCopy] = {}
        self._subscribers: list[Callable[[str], None]] = []

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, puzzle_id: str) -> None:
        for callback in list(self._subscribers):
            callback(puzzle_id)

    def _load_timer(self, puzzle_id: str) -> Timer | None:
        loaded = read_json(self._storage, _timer_key(puzzle_id))
        if not loaded.ok:
            logger.warning("Ignoring unreadable timer for %s: %s", puzzle_id, loaded.error)
            return None
        if not isinstance(loaded.value, dict):
            return None
        try:
            return Timer.from_dict(loaded.value["state"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed timer for %s: %s", puzzle_id, exc)
            return None

    def _load_copy(self, puzzle_id: str) -> PuzzleCopy | None:
        loaded = read_json(self._storage, session_id_for(puzzle_id))
        if not loaded.ok:
            logger.warning("Ignoring unreadable puzzle %s: %s", puzzle_id, loaded.error)
            return None
        if not isinstance(loaded.value, dict):
            return None
        try:
            state = ServerState.from_dict(loaded.value["state"])
            last_updated = _from_epoch_ms(loaded.value["lastUpdated"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed puzzle %s: %s", puzzle_id, exc)
            return None
        return PuzzleCopy(
            puzzle_id=puzzle_id,
            state=replace(state, timer=None),
            last_updated=last_updated,
            timer=self._load_timer(puzzle_id) or state.timer,
        )

    def _persist(self, copy: PuzzleCopy) -> None:
        saved = write_json(
            self._storage,
            session_id_for(copy.puzzle_id),
            {"lastUpdated": _to_epoch_ms(copy.last_updated), "state": copy.state.to_dict()},
        )
        if not saved.ok:
            logger.warning("Failed to save puzzle %s locally: %s", copy.puzzle_id, saved.error)
        self._persist_timer(copy)

    def _persist_timer(self, copy: PuzzleCopy) -> None:
        if copy.timer is None:
            return
        saved = write_json(
            self._storage,
            _timer_key(copy.puzzle_id),
            {"lastUpdated": _to_epoch_ms(self._clock()), "state": copy.timer.to_dict()},
        )
        if not saved.ok:
            logger.warning("Failed to save timer for %s locally: %s", copy.puzzle_id, saved.error)

    def _commit(self, copy: PuzzleCopy, last_updated: datetime | None = None) -> PuzzleCopy:
        copy.version += 1
        copy.last_updated = last_updated or self._clock()
        self._persist(copy)
        self._notify(copy.puzzle_id)
        return copy

    def get(self, puzzle_id: str) -> PuzzleCopy | None:
        copy = self._copies.get(puzzle_id)
        if copy is None:
            copy = self._load_copy(puzzle_id)
            if copy is not None:
                self._copies[puzzle_id] = copy
        return copy

    def _require(self, puzzle_id: str) -> PuzzleCopy:
        copy = self.get(puzzle_id)
        if copy is None:
            raise KeyError(f"unknown puzzle {puzzle_id}")
        return copy

    def start(
        self,
        puzzle_id: str,
        initial: Any,
        final: Any,
        metadata: PuzzleMetadata | None = None,
    ) -> PuzzleCopy:
        """Restore the saved attempt for a puzzle or begin a new one, resuming its timer."""
        copy = self.get(puzzle_id)
        if copy is None:
            copy = PuzzleCopy(
                puzzle_id=puzzle_id,
                state=build_initial_state(initial, final, metadata),
                last_updated=self._clock(),
                timer=start_timer_session(None, self._clock()),
            )
            self._copies[puzzle_id] = copy
            return self._commit(copy)
        if copy.state.completed is None:
            copy.timer = start_timer_session(copy.timer, self._clock())
            self._persist_timer(copy)
        return copy

    def push_answer(self, puzzle_id: str, grid: Any, is_complete: bool = False) -> PuzzleCopy:
        copy = self._require(puzzle_id)
        now = self._clock()
        completed = None
        if is_complete:
            copy.timer = stop_timer(copy.timer or start_timer_session(None, now), now)
            completed = Completion(at=now, seconds=elapsed_seconds(copy.timer))
        else:
            copy.timer = touch_timer(copy.timer, now)
        copy.state = replace(copy.state, answer_stack=[*copy.state.answer_stack, grid], completed=completed)
        copy.redo_stack = []
        return self._commit(copy, now)

    def can_undo(self, puzzle_id: str) -> bool:
        return _has_undo(self.get(puzzle_id))

    def undo(self, puzzle_id: str, subscribed: bool = False) -> bool:
        """Step back one answer; free accounts spend one of today's undos."""
        copy = self.get(puzzle_id)
        if copy is None or not _has_undo(copy):
            return False
        if not subscribed and not self._limiter.can_use(DailyAction.UNDO):
            return False
        *remaining, last = copy.state.answer_stack
        copy.redo_stack = [*copy.redo_stack, last]
        copy.state = replace(copy.state, answer_stack=remaining, completed=None)
        if not subscribed:
            self._limiter.increment(DailyAction.UNDO)
        self._commit(copy)
        return True

    def redo(self, puzzle_id: str) -> bool:
        copy = self.get(puzzle_id)
        if copy is None or not copy.redo_stack:
            return False
        *remaining, last = copy.redo_stack
        copy.redo_stack = remaining
        copy.state = replace(copy.state, answer_stack=[*copy.state.answer_stack, last], completed=None)
        self._commit(copy)
        return True

    def use_check_grid(self, subscribed: bool = False) -> bool:
        if subscribed:
            return True
        if not self._limiter.can_use(DailyAction.CHECK_GRID):
            return False
        self._limiter.increment(DailyAction.CHECK_GRID)
        return True

    def start_timer(self, puzzle_id: str) -> Timer | None:
        copy = self._require(puzzle_id)
        if copy.state.completed is None:
            copy.timer = start_timer_session(copy.timer, self._clock())
            self._persist_timer(copy)
        return copy.timer

    def touch_timer(self, puzzle_id: str) -> Timer | None:
        copy = self._require(puzzle_id)
        copy.timer = touch_timer(copy.timer, self._clock())
        self._persist_timer(copy)
        return copy.timer

    def elapsed_seconds(self, puzzle_id: str) -> int:
        copy = self.get(puzzle_id)
        return elapsed_seconds(copy.timer) if copy is not None else 0

    def replace_from_server(self, puzzle_id: str, state: ServerState, updated_at: datetime) -> PuzzleCopy:
        """Overwrite the local copy with the server's snapshot, discarding local history."""
        copy = self.get(puzzle_id)
        timer = state.timer
        if state.completed is None:
            timer = start_timer_session(timer, self._clock())
        if copy is None:
            copy = PuzzleCopy(puzzle_id=puzzle_id, state=state, last_updated=updated_at)
            self._copies[puzzle_id] = copy
        copy.state = replace(state, timer=None)
        copy.timer = timer
        copy.redo_stack = []
        return self._commit(copy, updated_at)

    def list_local(self) -> list[ServerStateResult[ServerState]]:
        """Every persisted puzzle joined with its timer, newest first."""
        listed = self._storage.keys()
        if not listed.ok:
            logger.warning("Failed to list local puzzles: %s", listed.error)
            return []
        results: list[ServerStateResult[ServerState]] = []
        for key in listed.value or []:
            puzzle_id = puzzle_id_for(key)
            if puzzle_id is None or key.endswith(TIMER_SUFFIX):
                continue
            copy = self.get(puzzle_id)
            if copy is None:
                continue
            results.append(
                ServerStateResult(
                    session_id=copy.session_id,
                    user_id=self._user_id,
                    state=copy.snapshot(),
                    created_at=copy.last_updated,
                    updated_at=copy.last_updated,
                )
            )
        results.sort(key=lambda result: result.updated_at, reverse=True)
        return results
