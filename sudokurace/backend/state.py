"""State builders and timer derivations for puzzle snapshots."""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from .models import PuzzleMetadata, ServerState, Timer

SERVER_ANSWER_STACK_SIZE = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_seconds(timer: Timer | None) -> int:
    """Seconds spent on a puzzle: banked seconds plus the current in-progress stretch."""
    if timer is None:
        return 0
    stretch = (timer.last_interaction - timer.start).total_seconds()
    return timer.seconds + math.floor(stretch)


def start_timer_session(timer: Timer | None, now: datetime | None = None) -> Timer:
    """Bank the elapsed time and open a fresh in-progress stretch at ``now``."""
    current = now or _utc_now()
    return Timer(seconds=elapsed_seconds(timer), start=current, last_interaction=current)


def touch_timer(timer: Timer | None, now: datetime | None = None) -> Timer | None:
    if timer is None or timer.stopped:
        return timer
    return replace(timer, last_interaction=now or _utc_now())


def stop_timer(timer: Timer | None, now: datetime | None = None) -> Timer | None:
    touched = touch_timer(timer, now)
    if touched is None:
        return None
    return replace(touched, stopped=True)


def build_initial_state(initial: Any, final: Any, metadata: PuzzleMetadata | None = None) -> ServerState:
    """Return a fresh attempt whose answer stack holds only the given starting grid."""
    return ServerState(answer_stack=[initial], initial=initial, final=final, metadata=metadata)


def shrink_for_server(state: ServerState, timer: Timer | None) -> ServerState:
    """Trim the answer stack to the latest guesses and attach the timer before a push."""
    return replace(
        state,
        answer_stack=list(state.answer_stack[-SERVER_ANSWER_STACK_SIZE:]),
        timer=timer if timer is not None else state.timer,
    )
