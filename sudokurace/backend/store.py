"""Persistence interfaces and implementations for server-side sessions, parties and books."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable, Protocol
import uuid

from .models import (
    BookOfTheMonth,
    MemberStatus,
    Party,
    PartyInvariantError,
    PartyMember,
    PartyRecord,
    PartyRole,
    PartySettings,
    ServerState,
    ServerStateResult,
    Session,
    SessionParty,
    validate_party,
)

DEFAULT_RETENTION_DAYS = 32


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionRecordStore(Protocol):
    def get_session(self, user_id: str, session_id: str) -> ServerStateResult[ServerState] | None:
        """Return the caller's session with the same puzzle's sessions of fellow party members."""

    def save_session(
        self,
        user_id: str,
        session_id: str,
        state: ServerState,
        expires_at: datetime | None = None,
    ) -> ServerStateResult[ServerState]:
        """Upsert a session snapshot and return it as stored."""

    def list_sessions(
        self,
        user_id: str,
        party_id: str | None = None,
        member_id: str | None = None,
    ) -> list[ServerStateResult[ServerState]] | None:
        """List sessions of the caller or, when they share a party, of another member."""

    def create_party(
        self,
        user_id: str,
        name: str,
        member_nickname: str,
        description: str | None = None,
        settings: PartySettings | None = None,
    ) -> PartyRecord:
        """Create a party owned by the caller."""

    def join_party(self, party_id: str, user_id: str, member_nickname: str) -> PartyRecord | None:
        """Add or reactivate the caller as a member."""

    def leave_party(self, party_id: str, user_id: str) -> PartyRecord | None:
        """Mark the caller as having left the party."""

    def get_party(self, party_id: str) -> PartyRecord | None:
        """Return a party with all of its members."""

    def list_parties(self, user_id: str) -> list[PartyRecord]:
        """Return the parties the caller actively belongs to."""

    def get_book_of_the_month(self) -> BookOfTheMonth | None:
        """Return the currently published puzzle book."""

    def set_book_of_the_month(self, book: BookOfTheMonth) -> None:
        """Publish a puzzle book."""


def _shares_party(parties: list[PartyRecord], user_id: str, member_id: str, party_id: str | None) -> bool:
    for record in parties:
        if party_id is not None and record.party.party_id != party_id:
            continue
        if record.is_active_member(user_id) and record.is_active_member(member_id):
            return True
    return False


def _joined(record: PartyRecord, user_id: str, member_nickname: str, now: datetime) -> PartyRecord:
    existing = record.member(user_id)
    if existing is not None:
        joined = replace(existing, status=MemberStatus.ACTIVE, member_nickname=member_nickname)
        members = [joined if m.user_id == user_id else m for m in record.members]
    else:
        joined = PartyMember(
            user_id=user_id,
            party_id=record.party.party_id,
            role=PartyRole.MEMBER,
            joined_at=now,
            member_nickname=member_nickname,
        )
        members = [*record.members, joined]
    settings = record.party.settings
    if settings is not None and settings.max_members is not None:
        if sum(1 for m in members if m.status == MemberStatus.ACTIVE) > settings.max_members:
            raise PartyInvariantError(f"party {record.party.party_id} is full")
    return PartyRecord(party=replace(record.party, updated_at=now), members=members)


def _left(record: PartyRecord, user_id: str, now: datetime) -> PartyRecord:
    existing = record.member(user_id)
    if existing is None:
        return record
    if existing.role == PartyRole.OWNER:
        raise PartyInvariantError(f"owner cannot leave party {record.party.party_id}")
    members = [replace(m, status=MemberStatus.LEFT) if m.user_id == user_id else m for m in record.members]
    return PartyRecord(party=replace(record.party, updated_at=now), members=members)


def _new_party(
    user_id: str,
    name: str,
    member_nickname: str,
    description: str | None,
    settings: PartySettings | None,
    now: datetime,
) -> PartyRecord:
    party = Party(
        party_id=str(uuid.uuid4()),
        name=name,
        created_by=user_id,
        created_at=now,
        updated_at=now,
        description=description,
        settings=settings,
    )
    owner = PartyMember(
        user_id=user_id,
        party_id=party.party_id,
        role=PartyRole.OWNER,
        joined_at=now,
        member_nickname=member_nickname,
    )
    validate_party(party, [owner])
    return PartyRecord(party=party, members=[owner])


@dataclass
class InMemorySessionRecordStore:
    retention_days: int = DEFAULT_RETENTION_DAYS
    clock: Callable[[], datetime] = _utc_now

    def __post_init__(self) -> None:
        self._sessions: dict[tuple[str, str], Session[ServerState]] = {}
        self._parties: dict[str, PartyRecord] = {}
        self._book: BookOfTheMonth | None = None

    def _live(self, user_id: str, session_id: str, now: datetime) -> Session[ServerState] | None:
        session = self._sessions.get((user_id, session_id))
        if session is None:
            return None
        if session.expires_at is not None and session.expires_at <= now:
            return None
        return session

    def _session_parties(self, user_id: str, session_id: str, now: datetime) -> dict[str, SessionParty[ServerState]]:
        parties: dict[str, SessionParty[ServerState]] = {}
        for record in self._parties.values():
            if not record.is_active_member(user_id):
                continue
            member_sessions = {}
            for member in record.members:
                if member.user_id == user_id or member.status != MemberStatus.ACTIVE:
                    continue
                session = self._live(member.user_id, session_id, now)
                if session is not None:
                    member_sessions[member.user_id] = session
            parties[record.party.party_id] = SessionParty(member_sessions=member_sessions)
        return parties

    def _result(self, session: Session[ServerState], now: datetime) -> ServerStateResult[ServerState]:
        return ServerStateResult(
            session_id=session.session_id,
            user_id=session.user_id,
            state=session.state,
            created_at=session.created_at,
            updated_at=session.updated_at,
            expires_at=session.expires_at,
            parties=self._session_parties(session.user_id, session.session_id, now),
        )

    def get_session(self, user_id: str, session_id: str) -> ServerStateResult[ServerState] | None:
        now = self.clock()
        session = self._live(user_id, session_id, now)
        if session is None:
            return None
        return self._result(session, now)

    def save_session(
        self,
        user_id: str,
        session_id: str,
        state: ServerState,
        expires_at: datetime | None = None,
    ) -> ServerStateResult[ServerState]:
        now = self.clock()
        existing = self._live(user_id, session_id, now)
        session = Session(
            session_id=session_id,
            user_id=user_id,
            state=state,
            created_at=existing.created_at if existing is not None else now,
            updated_at=now,
            expires_at=expires_at or now + timedelta(days=self.retention_days),
        )
        self._sessions[(user_id, session_id)] = session
        return self._result(session, now)

    def list_sessions(
        self,
        user_id: str,
        party_id: str | None = None,
        member_id: str | None = None,
    ) -> list[ServerStateResult[ServerState]] | None:
        target = member_id or user_id
        if target != user_id and not _shares_party(list(self._parties.values()), user_id, target, party_id):
            return None
        now = self.clock()
        sessions = [
            ServerStateResult(
                session_id=session.session_id,
                user_id=session.user_id,
                state=session.state,
                created_at=session.created_at,
                updated_at=session.updated_at,
                expires_at=session.expires_at,
            )
            for (owner, session_id), session in self._sessions.items()
            if owner == target and self._live(owner, session_id, now) is not None
        ]
        sessions.sort(key=lambda session: session.updated_at, reverse=True)
        return sessions

    def create_party(
        self,
        user_id: str,
        name: str,
        member_nickname: str,
        description: str | None = None,
        settings: PartySettings | None = None,
    ) -> PartyRecord:
        record = _new_party(user_id, name, member_nickname, description, settings, self.clock())
        self._parties[record.party.party_id] = record
        return record

    def join_party(self, party_id: str, user_id: str, member_nickname: str) -> PartyRecord | None:
        record = self._parties.get(party_id)
        if record is None:
            return None
        record = _joined(record, user_id, member_nickname, self.clock())
        self._parties[party_id] = record
        return record

    def leave_party(self, party_id: str, user_id: str) -> PartyRecord | None:
        record = self._parties.get(party_id)
        if record is None or record.member(user_id) is None:
            return None
        record = _left(record, user_id, self.clock())
        self._parties[party_id] = record
        return record

    def get_party(self, party_id: str) -> PartyRecord | None:
        return self._parties.get(party_id)

    def list_parties(self, user_id: str) -> list[PartyRecord]:
        return [record for record in self._parties.values() if record.is_active_member(user_id)]

    def get_book_of_the_month(self) -> BookOfTheMonth | None:
        return self._book

    def set_book_of_the_month(self, book: BookOfTheMonth) -> None:
        self._book = book


def _json_value(value: Any) -> Any:
    return value if isinstance(value, (dict, list)) else json.loads(value)


@dataclass
class PostgresSessionRecordStore:
    database_url: str
    retention_days: int = DEFAULT_RETENTION_DAYS

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def _fetch_session_parties(self, cur: Any, user_id: str, session_id: str) -> dict[str, SessionParty[ServerState]]:
        cur.execute(
            """
            SELECT me.party_id, other.user_id, s.state_json, s.created_at, s.updated_at, s.expires_at
            FROM party_members me
            LEFT JOIN party_members other
              ON other.party_id = me.party_id AND other.user_id <> me.user_id AND other.status = 'active'
            LEFT JOIN sessions s
              ON s.user_id = other.user_id AND s.session_id = %s
                 AND (s.expires_at IS NULL OR s.expires_at > now())
            WHERE me.user_id = %s AND me.status = 'active'
            """,
            (session_id, user_id),
        )
        parties: dict[str, SessionParty[ServerState]] = {}
        for party_id, member_id, state_json, created_at, updated_at, expires_at in cur.fetchall():
            party = parties.setdefault(party_id, SessionParty(member_sessions={}))
            if member_id is None or state_json is None:
                continue
            party.member_sessions[member_id] = Session(
                session_id=session_id,
                user_id=member_id,
                state=ServerState.from_dict(_json_value(state_json)),
                created_at=created_at,
                updated_at=updated_at,
                expires_at=expires_at,
            )
        return parties

    def get_session(self, user_id: str, session_id: str) -> ServerStateResult[ServerState] | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT state_json, created_at, updated_at, expires_at
                    FROM sessions
                    WHERE user_id = %s AND session_id = %s
                      AND (expires_at IS NULL OR expires_at > now())
                    """,
                    (user_id, session_id),
                )
                row = cur.fetchone()
                if row is None:
                    return None
                parties = self._fetch_session_parties(cur, user_id, session_id)

        state_json, created_at, updated_at, expires_at = row
        return ServerStateResult(
            session_id=session_id,
            user_id=user_id,
            state=ServerState.from_dict(_json_value(state_json)),
            created_at=created_at,
            updated_at=updated_at,
            expires_at=expires_at,
            parties=parties,
        )

    def save_session(
        self,
        user_id: str,
        session_id: str,
        state: ServerState,
        expires_at: datetime | None = None,
    ) -> ServerStateResult[ServerState]:
        now = _utc_now()
        expiry = expires_at or now + timedelta(days=self.retention_days)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sessions (user_id, session_id, state_json, created_at, updated_at, expires_at)
                    VALUES (%s, %s, %s::jsonb, %s, %s, %s)
                    ON CONFLICT (user_id, session_id)
                    DO UPDATE SET state_json = EXCLUDED.state_json,
                                  updated_at = EXCLUDED.updated_at,
                                  expires_at = EXCLUDED.expires_at
                    RETURNING created_at
                    """,
                    (user_id, session_id, json.dumps(state.to_dict()), now, now, expiry),
                )
                row = cur.fetchone()
                parties = self._fetch_session_parties(cur, user_id, session_id)
            conn.commit()

        return ServerStateResult(
            session_id=session_id,
            user_id=user_id,
            state=state,
            created_at=row[0] if row else now,
            updated_at=now,
            expires_at=expiry,
            parties=parties,
        )

    def list_sessions(
        self,
        user_id: str,
        party_id: str | None = None,
        member_id: str | None = None,
    ) -> list[ServerStateResult[ServerState]] | None:
        target = member_id or user_id
        if target != user_id and not _shares_party(self.list_parties(user_id), user_id, target, party_id):
            return None
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT session_id, state_json, created_at, updated_at, expires_at
                    FROM sessions
                    WHERE user_id = %s AND (expires_at IS NULL OR expires_at > now())
                    ORDER BY updated_at DESC
                    """,
                    (target,),
                )
                rows = cur.fetchall()

        return [
            ServerStateResult(
                session_id=session_id,
                user_id=target,
                state=ServerState.from_dict(_json_value(state_json)),
                created_at=created_at,
                updated_at=updated_at,
                expires_at=expires_at,
            )
            for session_id, state_json, created_at, updated_at, expires_at in rows
        ]

    def _write_party(self, cur: Any, record: PartyRecord) -> None:
        party = record.party
        cur.execute(
            """
            INSERT INTO parties (id, name, description, created_by, settings_json, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (id) DO UPDATE SET updated_at = EXCLUDED.updated_at
            """,
            (
                party.party_id,
                party.name,
                party.description,
                party.created_by,
                json.dumps(party.settings.to_dict() if party.settings else None),
                party.created_at,
                party.updated_at,
            ),
        )
        for member in record.members:
            cur.execute(
                """
                INSERT INTO party_members (party_id, user_id, member_nickname, role, status, joined_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (party_id, user_id)
                DO UPDATE SET member_nickname = EXCLUDED.member_nickname, status = EXCLUDED.status
                """,
                (
                    member.party_id,
                    member.user_id,
                    member.member_nickname,
                    member.role.value,
                    member.status.value,
                    member.joined_at,
                ),
            )

    def create_party(
        self,
        user_id: str,
        name: str,
        member_nickname: str,
        description: str | None = None,
        settings: PartySettings | None = None,
    ) -> PartyRecord:
        record = _new_party(user_id, name, member_nickname, description, settings, _utc_now())
        with self._connect() as conn:
            with conn.cursor() as cur:
                self._write_party(cur, record)
            conn.commit()
        return record

    def _update_party(self, party_id: str, change: Any) -> PartyRecord | None:
        record = self.get_party(party_id)
        if record is None:
            return None
        updated = change(record)
        with self._connect() as conn:
            with conn.cursor() as cur:
                self._write_party(cur, updated)
            conn.commit()
        return updated

    def join_party(self, party_id: str, user_id: str, member_nickname: str) -> PartyRecord | None:
        return self._update_party(party_id, lambda record: _joined(record, user_id, member_nickname, _utc_now()))

    def leave_party(self, party_id: str, user_id: str) -> PartyRecord | None:
        record = self.get_party(party_id)
        if record is None or record.member(user_id) is None:
            return None
        return self._update_party(party_id, lambda current: _left(current, user_id, _utc_now()))

    def _fetch_parties(self, where: str, params: tuple) -> list[PartyRecord]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT p.id, p.name, p.description, p.created_by, p.settings_json, p.created_at, p.updated_at,
                           m.user_id, m.member_nickname, m.role, m.status, m.joined_at
                    FROM parties p
                    JOIN party_members m ON m.party_id = p.id
                    WHERE {where}
                    ORDER BY p.created_at, m.joined_at
                    """,
                    params,
                )
                rows = cur.fetchall()

        records: dict[str, PartyRecord] = {}
        for row in rows:
            party_id, name, description, created_by, settings_json, created_at, updated_at = row[:7]
            member_id, nickname, role, status, joined_at = row[7:]
            record = records.get(party_id)
            if record is None:
                settings_data = _json_value(settings_json) if settings_json is not None else None
                record = PartyRecord(
                    party=Party(
                        party_id=party_id,
                        name=name,
                        created_by=created_by,
                        created_at=created_at,
                        updated_at=updated_at,
                        description=description,
                        settings=PartySettings.from_dict(settings_data) if settings_data else None,
                    ),
                    members=[],
                )
                records[party_id] = record
            record.members.append(
                PartyMember(
                    user_id=member_id,
                    party_id=party_id,
                    role=PartyRole(role),
                    joined_at=joined_at,
                    status=MemberStatus(status),
                    member_nickname=nickname,
                )
            )
        return list(records.values())

    def get_party(self, party_id: str) -> PartyRecord | None:
        records = self._fetch_parties("p.id = %s", (party_id,))
        return records[0] if records else None

    def list_parties(self, user_id: str) -> list[PartyRecord]:
        return self._fetch_parties(
            "p.id IN (SELECT party_id FROM party_members WHERE user_id = %s AND status = 'active')",
            (user_id,),
        )

    def get_book_of_the_month(self) -> BookOfTheMonth | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, month, puzzles_json, created_at, updated_at, expires_at
                    FROM books
                    ORDER BY created_at DESC
                    LIMIT 1
                    """
                )
                row = cur.fetchone()

        if row is None:
            return None
        book_id, month, puzzles_json, created_at, updated_at, expires_at = row
        return BookOfTheMonth(
            book_id=book_id,
            month=month,
            puzzles=list(_json_value(puzzles_json)),
            created_at=created_at,
            updated_at=updated_at,
            expires_at=expires_at,
        )

    def set_book_of_the_month(self, book: BookOfTheMonth) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO books (id, month, puzzles_json, created_at, updated_at, expires_at)
                    VALUES (%s, %s, %s::jsonb, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET puzzles_json = EXCLUDED.puzzles_json,
                                                   updated_at = EXCLUDED.updated_at,
                                                   expires_at = EXCLUDED.expires_at
                    """,
                    (
                        book.book_id,
                        book.month,
                        json.dumps(book.puzzles),
                        book.created_at,
                        book.updated_at,
                        book.expires_at,
                    ),
                )
            conn.commit()


def create_store(database_url: str | None, retention_days: int = DEFAULT_RETENTION_DAYS) -> SessionRecordStore:
    if database_url:
        return PostgresSessionRecordStore(database_url=database_url, retention_days=retention_days)
    return InMemorySessionRecordStore(retention_days=retention_days)
