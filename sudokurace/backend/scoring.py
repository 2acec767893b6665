"""Composite score for a user's completed puzzles, with an auditable breakdown."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
import math
from typing import Any, Iterable, Mapping

from .models import ServerState, ServerStateResult, Session
from .state import elapsed_seconds


class PuzzleType(str, Enum):
    DAILY = "daily"
    BOOK = "book"
    SCANNED = "scanned"
    UNKNOWN = "unknown"


DAILY_ID_MARKER = "oftheday"


def _default_multipliers() -> dict[str, float]:
    return {
        # daily puzzles
        "simple": 1.0,
        "easy": 1.2,
        "medium": 1.5,
        "intermediate": 1.5,
        "expert": 2.0,
        # book puzzles
        "very-easy": 1.0,
        "moderately-easy": 1.3,
        "moderate": 1.4,
        "moderately-hard": 1.6,
        "hard": 1.8,
        "vicious": 2.5,
        "fiendish": 2.8,
        "devilish": 3.2,
        "hell": 3.6,
        "beyond-hell": 4.0,
    }


def _default_speed_curve() -> tuple[tuple[int, int], ...]:
    return ((180, 500), (300, 300), (600, 150), (1200, 50), (1800, 0))


@dataclass(frozen=True)
class ScoringConfig:
    daily_puzzle_base: int = 100
    book_puzzle_base: int = 150
    scanned_puzzle_base: int = 75
    volume_multiplier: int = 10
    racing_bonus_per_person: int = 100
    difficulty_multipliers: dict[str, float] = field(default_factory=_default_multipliers)
    speed_curve: tuple[tuple[int, int], ...] = field(default_factory=_default_speed_curve)

    def base_score(self, puzzle_type: PuzzleType) -> int:
        if puzzle_type == PuzzleType.DAILY:
            return self.daily_puzzle_base
        if puzzle_type == PuzzleType.BOOK:
            return self.book_puzzle_base
        if puzzle_type == PuzzleType.SCANNED:
            return self.scanned_puzzle_base
        return 0

    def multiplier(self, difficulty: str | None) -> float:
        if not difficulty:
            return 1.0
        return self.difficulty_multipliers.get(difficulty.lower(), 1.0)


SCORING_CONFIG = ScoringConfig()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(frozen=True)
class ScoreBreakdown:
    volume_score: int = 0
    daily_puzzle_score: int = 0
    book_puzzle_score: int = 0
    scanned_puzzle_score: int = 0
    difficulty_bonus: int = 0
    speed_bonus: int = 0
    racing_bonus: int = 0

    @property
    def total(self) -> int:
        return sum(getattr(self, item.name) for item in fields(self))

    def to_dict(self) -> dict[str, int]:
        return {_camel(item.name): getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True)
class ScoreStats:
    total_puzzles: int = 0
    daily_puzzles: int = 0
    book_puzzles: int = 0
    scanned_puzzles: int = 0
    average_time: float = 0
    fastest_time: int = 0
    racing_wins: int = 0

    def to_dict(self) -> dict[str, float]:
        return {_camel(item.name): getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True)
class ScoringResult:
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)
    stats: ScoreStats = field(default_factory=ScoreStats)

    @property
    def total_score(self) -> int:
        return self.breakdown.total

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"totalScore": self.total_score}
        data.update(self.breakdown.to_dict())
        data["stats"] = self.stats.to_dict()
        return data


@dataclass(frozen=True)
class RacingResult:
    bonus: int
    wins: int
    beaten: int
    participants: int


def get_puzzle_type(session: Session[ServerState]) -> PuzzleType:
    metadata = session.state.metadata
    if metadata is None:
        return PuzzleType.UNKNOWN
    if metadata.sudoku_id and DAILY_ID_MARKER in metadata.sudoku_id:
        return PuzzleType.DAILY
    if metadata.sudoku_book_puzzle_id:
        return PuzzleType.BOOK
    if metadata.scanned_at:
        return PuzzleType.SCANNED
    return PuzzleType.UNKNOWN


def get_puzzle_identifier(session: Session[ServerState]) -> str:
    """Key under which attempts by different users count as the same puzzle."""
    metadata = session.state.metadata
    if metadata is not None and metadata.sudoku_id:
        return metadata.sudoku_id
    if metadata is not None and metadata.sudoku_book_puzzle_id:
        return metadata.sudoku_book_puzzle_id
    return session.session_id


def completion_seconds(session: Session[ServerState]) -> int:
    completed = session.state.completed
    if completed is not None:
        return completed.seconds
    return elapsed_seconds(session.state.timer)


def calculate_speed_bonus(seconds: float, config: ScoringConfig = SCORING_CONFIG) -> int:
    """Linear interpolation along the speed curve, capped at its first point and zero past its last."""
    curve = config.speed_curve
    if not curve:
        return 0
    first_seconds, first_bonus = curve[0]
    if seconds <= first_seconds:
        return first_bonus
    for (left_seconds, left_bonus), (right_seconds, right_bonus) in zip(curve, curve[1:]):
        if seconds <= right_seconds:
            fraction = (seconds - left_seconds) / (right_seconds - left_seconds)
            return max(0, math.floor(left_bonus + (right_bonus - left_bonus) * fraction))
    return 0


def _finish_key(session: Session[ServerState]) -> tuple[int, datetime | None, str]:
    completed = session.state.completed
    at = completed.at if completed is not None else None
    return (completion_seconds(session), at, session.user_id)


def _race_participants(
    session: ServerStateResult[ServerState],
    user_id: str,
    friends_sessions: Mapping[str, Iterable[ServerStateResult[ServerState]]],
) -> dict[str, Session[ServerState]]:
    puzzle_id = get_puzzle_identifier(session)
    participants: dict[str, Session[ServerState]] = {}
    for party in session.parties.values():
        for member_id, member_session in party.member_sessions.items():
            if member_id == user_id or member_session.state.completed is None:
                continue
            participants.setdefault(member_id, member_session)
    for friend_id, sessions in friends_sessions.items():
        if friend_id == user_id or friend_id in participants:
            continue
        for friend_session in sessions:
            if friend_session.state.completed is not None and get_puzzle_identifier(friend_session) == puzzle_id:
                participants[friend_id] = friend_session
                break
    return participants


def calculate_racing_bonus(
    session: ServerStateResult[ServerState],
    user_id: str,
    friends_sessions: Mapping[str, Iterable[ServerStateResult[ServerState]]] | None = None,
    config: ScoringConfig = SCORING_CONFIG,
) -> RacingResult:
    """Bonus for each other finisher of the same puzzle that this attempt beat.

    Finishers are ordered by completion seconds, then completion timestamp,
    then user id, so exactly one participant can win a race.
    """
    if session.state.completed is None:
        return RacingResult(bonus=0, wins=0, beaten=0, participants=0)
    participants = _race_participants(session, user_id, friends_sessions or {})
    if not participants:
        return RacingResult(bonus=0, wins=0, beaten=0, participants=0)

    own_key = (completion_seconds(session), session.state.completed.at, user_id)
    beaten = 0
    for other_id, other in participants.items():
        seconds, at, _ = _finish_key(other)
        if own_key < (seconds, at, other_id):
            beaten += 1
    wins = 1 if beaten == len(participants) else 0
    return RacingResult(
        bonus=beaten * config.racing_bonus_per_person,
        wins=wins,
        beaten=beaten,
        participants=len(participants),
    )


def calculate_user_score(
    sessions: Iterable[ServerStateResult[ServerState]],
    user_id: str | None = None,
    friends_sessions: Mapping[str, Iterable[ServerStateResult[ServerState]]] | None = None,
    config: ScoringConfig = SCORING_CONFIG,
) -> ScoringResult:
    """Score completed sessions in a single pass; the stats derive from the same loop.

    ``friends_sessions`` maps other users to their sessions and, together with
    each session's ``parties``, determines who raced the same puzzle.
    """
    volume = daily = book = scanned = difficulty = speed = racing = 0
    total = daily_count = book_count = scanned_count = racing_wins = 0
    total_time = 0
    fastest: int | None = None

    for session in sessions:
        if session.state.completed is None:
            continue
        seconds = completion_seconds(session)
        total += 1
        total_time += seconds
        fastest = seconds if fastest is None else min(fastest, seconds)
        volume += config.volume_multiplier

        puzzle_type = get_puzzle_type(session)
        base = config.base_score(puzzle_type)
        if puzzle_type == PuzzleType.DAILY:
            daily += base
            daily_count += 1
        elif puzzle_type == PuzzleType.BOOK:
            book += base
            book_count += 1
        elif puzzle_type == PuzzleType.SCANNED:
            scanned += base
            scanned_count += 1

        if puzzle_type in (PuzzleType.DAILY, PuzzleType.BOOK):
            metadata = session.state.metadata
            multiplier = config.multiplier(metadata.difficulty if metadata is not None else None)
            difficulty += round(base * (multiplier - 1))
        speed += calculate_speed_bonus(seconds, config)

        race = calculate_racing_bonus(session, user_id or session.user_id, friends_sessions, config)
        racing += race.bonus
        racing_wins += race.wins

    return ScoringResult(
        breakdown=ScoreBreakdown(
            volume_score=volume,
            daily_puzzle_score=daily,
            book_puzzle_score=book,
            scanned_puzzle_score=scanned,
            difficulty_bonus=difficulty,
            speed_bonus=speed,
            racing_bonus=racing,
        ),
        stats=ScoreStats(
            total_puzzles=total,
            daily_puzzles=daily_count,
            book_puzzles=book_count,
            scanned_puzzles=scanned_count,
            average_time=total_time / total if total else 0,
            fastest_time=fastest or 0,
            racing_wins=racing_wins,
        ),
    )


def format_time(seconds: float) -> str:
    if seconds <= 0:
        return "0:00"
    minutes = int(seconds // 60)
    remainder = round(seconds % 60)
    if remainder == 60:
        minutes, remainder = minutes + 1, 0
    return f"{minutes}:{remainder:02d}"
