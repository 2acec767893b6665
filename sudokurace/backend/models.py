"""Domain models for parties, sessions and server state exchanged during sync."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
V = TypeVar("V")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _required_timestamp(value: str | datetime | None) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("timestamp is required")
    return parsed


class PartyRole(str, Enum):
    OWNER = "owner"
    MODERATOR = "moderator"
    MEMBER = "member"


class MemberStatus(str, Enum):
    ACTIVE = "active"
    INVITED = "invited"
    DECLINED = "declined"
    LEFT = "left"


class PartyInvariantError(ValueError):
    """Raised when a party and its members break ownership or timestamp rules."""


@dataclass(frozen=True)
class PartySettings:
    is_public: bool = False
    invitation_required: bool = True
    max_members: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxMembers": self.max_members,
            "isPublic": self.is_public,
            "invitationRequired": self.invitation_required,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartySettings:
        return cls(
            is_public=bool(data.get("isPublic", False)),
            invitation_required=bool(data.get("invitationRequired", True)),
            max_members=data.get("maxMembers"),
        )


@dataclass(frozen=True)
class Party:
    party_id: str
    name: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    settings: PartySettings | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "partyId": self.party_id,
            "name": self.name,
            "description": self.description,
            "createdBy": self.created_by,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "settings": self.settings.to_dict() if self.settings else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Party:
        settings = data.get("settings")
        return cls(
            party_id=data["partyId"],
            name=data["name"],
            created_by=data["createdBy"],
            created_at=_required_timestamp(data["createdAt"]),
            updated_at=_required_timestamp(data["updatedAt"]),
            description=data.get("description"),
            settings=PartySettings.from_dict(settings) if isinstance(settings, dict) else None,
        )


@dataclass(frozen=True)
class PartyMember:
    user_id: str
    party_id: str
    role: PartyRole
    joined_at: datetime
    status: MemberStatus = MemberStatus.ACTIVE
    member_nickname: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "partyId": self.party_id,
            "memberNickname": self.member_nickname,
            "role": self.role.value,
            "joinedAt": format_timestamp(self.joined_at),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartyMember:
        return cls(
            user_id=data["userId"],
            party_id=data["partyId"],
            role=PartyRole(data.get("role", PartyRole.MEMBER.value)),
            joined_at=_required_timestamp(data["joinedAt"]),
            status=MemberStatus(data.get("status", MemberStatus.ACTIVE.value)),
            member_nickname=data.get("memberNickname"),
        )


def active_roster(members: list[PartyMember]) -> list[PartyMember]:
    """Members currently in the party; departed members keep their history elsewhere."""
    return [member for member in members if member.status == MemberStatus.ACTIVE]


def validate_party(party: Party, members: list[PartyMember]) -> None:
    if party.updated_at < party.created_at:
        raise PartyInvariantError(f"party {party.party_id} updatedAt precedes createdAt")
    owners = [m for m in members if m.party_id == party.party_id and m.role == PartyRole.OWNER]
    if len(owners) != 1:
        raise PartyInvariantError(f"party {party.party_id} must have exactly one owner, found {len(owners)}")
    if owners[0].user_id != party.created_by:
        raise PartyInvariantError(f"party {party.party_id} creator {party.created_by} is not its owner")


@dataclass(frozen=True)
class Timer:
    seconds: int
    start: datetime
    last_interaction: datetime
    stopped: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "seconds": self.seconds,
            "inProgress": {
                "start": format_timestamp(self.start),
                "lastInteraction": format_timestamp(self.last_interaction),
            },
        }
        if self.stopped:
            data["stopped"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Timer:
        in_progress = data["inProgress"]
        return cls(
            seconds=int(data.get("seconds", 0)),
            start=_required_timestamp(in_progress["start"]),
            last_interaction=_required_timestamp(in_progress["lastInteraction"]),
            stopped=bool(data.get("stopped", False)),
        )


@dataclass(frozen=True)
class Completion:
    at: datetime
    seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {"at": format_timestamp(self.at), "seconds": self.seconds}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Completion:
        return cls(at=_required_timestamp(data["at"]), seconds=int(data["seconds"]))


@dataclass(frozen=True)
class PuzzleMetadata:
    difficulty: str | None = None
    sudoku_id: str | None = None
    sudoku_book_puzzle_id: str | None = None
    scanned_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        pairs = {
            "difficulty": self.difficulty,
            "sudokuId": self.sudoku_id,
            "sudokuBookPuzzleId": self.sudoku_book_puzzle_id,
            "scannedAt": self.scanned_at,
        }
        return {key: value for key, value in pairs.items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PuzzleMetadata:
        return cls(
            difficulty=data.get("difficulty"),
            sudoku_id=data.get("sudokuId"),
            sudoku_book_puzzle_id=data.get("sudokuBookPuzzleId"),
            scanned_at=data.get("scannedAt"),
        )


@dataclass(frozen=True)
class ServerState:
    """Snapshot of one puzzle attempt; grids are opaque values from the Sudoku engine."""

    answer_stack: list[Any]
    initial: Any = None
    final: Any = None
    completed: Completion | None = None
    metadata: PuzzleMetadata | None = None
    timer: Timer | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "answerStack": list(self.answer_stack),
            "initial": self.initial,
            "final": self.final,
        }
        if self.completed is not None:
            data["completed"] = self.completed.to_dict()
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        if self.timer is not None:
            data["timer"] = self.timer.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerState:
        completed = data.get("completed")
        metadata = data.get("metadata")
        timer = data.get("timer")
        return cls(
            answer_stack=list(data.get("answerStack", [])),
            initial=data.get("initial"),
            final=data.get("final"),
            completed=Completion.from_dict(completed) if isinstance(completed, dict) else None,
            metadata=PuzzleMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
            timer=Timer.from_dict(timer) if isinstance(timer, dict) else None,
        )


def _dump_state(state: Any) -> Any:
    to_dict = getattr(state, "to_dict", None)
    return to_dict() if callable(to_dict) else state


@dataclass(frozen=True)
class Session(Generic[T]):
    session_id: str
    user_id: str
    state: T
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "state": _dump_state(self.state),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "expiresAt": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], load_state: Callable[[Any], T]) -> Session[T]:
        updated_at = _required_timestamp(data["updatedAt"])
        return cls(
            session_id=data["sessionId"],
            user_id=data.get("userId", ""),
            state=load_state(data["state"]),
            created_at=parse_timestamp(data.get("createdAt")) or updated_at,
            updated_at=updated_at,
            expires_at=parse_timestamp(data.get("expiresAt")),
        )


@dataclass(frozen=True)
class CollaborativeSession(Session[T]):
    """A race: one puzzle instance shared by every participant of a party."""

    party_id: str = ""
    participant_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["partyId"] = self.party_id
        data["participantIds"] = list(self.participant_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], load_state: Callable[[Any], T]) -> CollaborativeSession[T]:
        base = Session.from_dict(data, load_state)
        return cls(
            session_id=base.session_id,
            user_id=base.user_id,
            state=base.state,
            created_at=base.created_at,
            updated_at=base.updated_at,
            expires_at=base.expires_at,
            party_id=data.get("partyId", ""),
            participant_ids=tuple(data.get("participantIds", ())),
        )


@dataclass(frozen=True)
class SessionParty(Generic[T]):
    member_sessions: dict[str, Session[T]] = field(default_factory=dict)


@dataclass(frozen=True)
class ServerStateResult(Session[T]):
    """A session as returned by the server, with the same puzzle's sessions from each shared party."""

    parties: dict[str, SessionParty[T]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["parties"] = {
            party_id: {
                "memberSessions": {
                    user_id: session.to_dict() for user_id, session in party.member_sessions.items()
                }
            }
            for party_id, party in self.parties.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], load_state: Callable[[Any], T]) -> ServerStateResult[T]:
        base = Session.from_dict(data, load_state)
        parties: dict[str, SessionParty[T]] = {}
        for party_id, party_data in (data.get("parties") or {}).items():
            if not isinstance(party_data, dict):
                continue
            member_sessions = {}
            for user_id, member_data in (party_data.get("memberSessions") or {}).items():
                if not member_data:
                    continue
                member = dict(member_data)
                member.setdefault("sessionId", base.session_id)
                member.setdefault("userId", user_id)
                member_sessions[user_id] = Session.from_dict(member, load_state)
            parties[party_id] = SessionParty(member_sessions=member_sessions)
        return cls(
            session_id=base.session_id,
            user_id=base.user_id,
            state=base.state,
            created_at=base.created_at,
            updated_at=base.updated_at,
            expires_at=base.expires_at,
            parties=parties,
        )


AllFriendsSessionsMap = dict[str, list[ServerStateResult[ServerState]]]


def server_state_result_from_dict(data: dict[str, Any]) -> ServerStateResult[ServerState]:
    return ServerStateResult.from_dict(data, ServerState.from_dict)


@dataclass(frozen=True)
class DailyActionData:
    date: str
    undo_count: int = 0
    check_grid_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "undoCount": self.undo_count, "checkGridCount": self.check_grid_count}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DailyActionData:
        return cls(
            date=str(data["date"]),
            undo_count=int(data.get("undoCount", 0)),
            check_grid_count=int(data.get("checkGridCount", 0)),
        )


@dataclass(frozen=True)
class BookOfTheMonth:
    book_id: str
    month: str
    puzzles: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bookId": self.book_id,
            "month": self.month,
            "puzzles": [dict(puzzle) for puzzle in self.puzzles],
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "expiresAt": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BookOfTheMonth:
        return cls(
            book_id=data["bookId"],
            month=data["month"],
            puzzles=[dict(puzzle) for puzzle in data.get("puzzles", [])],
            created_at=_required_timestamp(data["createdAt"]),
            updated_at=_required_timestamp(data["updatedAt"]),
            expires_at=parse_timestamp(data.get("expiresAt")),
        )


@dataclass(frozen=True)
class StorageResult(Generic[V]):
    """Outcome of a device-storage call; failures are values, not exceptions."""

    ok: bool
    value: V | None = None
    error: str | None = None

    @classmethod
    def success(cls, value: V | None = None) -> StorageResult[V]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> StorageResult[V]:
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class PartyRecord:
    party: Party
    members: list[PartyMember]

    def member(self, user_id: str) -> PartyMember | None:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def is_active_member(self, user_id: str) -> bool:
        member = self.member(user_id)
        return member is not None and member.status == MemberStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        data = self.party.to_dict()
        data["members"] = [member.to_dict() for member in self.members]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartyRecord:
        return cls(
            party=Party.from_dict(data),
            members=[PartyMember.from_dict(member) for member in data.get("members", [])],
        )
