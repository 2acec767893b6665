"""Friends leaderboard built from every party member's session history."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .models import AllFriendsSessionsMap, PartyMember, PartyRecord
from .scoring import ScoreBreakdown, ScoreStats, ScoringConfig, SCORING_CONFIG, calculate_user_score

UNKNOWN_USERNAME = "Unknown User"


@dataclass(frozen=True)
class FriendsLeaderboardScore:
    user_id: str
    username: str
    total_score: int
    breakdown: ScoreBreakdown
    stats: ScoreStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "totalScore": self.total_score,
            "breakdown": self.breakdown.to_dict(),
            "stats": self.stats.to_dict(),
        }


def username_from_members(user_id: str, members: Iterable[PartyMember]) -> str:
    for member in members:
        if member.user_id == user_id and member.member_nickname:
            return member.member_nickname
    return UNKNOWN_USERNAME


def username_resolver(parties: Iterable[PartyRecord]) -> Callable[[str], str]:
    members = [member for record in parties for member in record.members]
    return lambda user_id: username_from_members(user_id, members)


def build_leaderboard(
    all_sessions: AllFriendsSessionsMap,
    resolve_username: Callable[[str], str],
    roster: Iterable[str] = (),
    config: ScoringConfig = SCORING_CONFIG,
) -> list[FriendsLeaderboardScore]:
    """Score every user once and rank by total score, puzzle count, then user id."""
    user_ids = list(dict.fromkeys([*all_sessions, *roster]))
    entries = []
    for user_id in user_ids:
        result = calculate_user_score(all_sessions.get(user_id, []), user_id, all_sessions, config)
        entries.append(
            FriendsLeaderboardScore(
                user_id=user_id,
                username=resolve_username(user_id),
                total_score=result.total_score,
                breakdown=result.breakdown,
                stats=result.stats,
            )
        )
    entries.sort(key=lambda entry: (-entry.total_score, -entry.stats.total_puzzles, entry.user_id))
    return entries
