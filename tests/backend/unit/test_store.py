from datetime import datetime, timedelta, timezone
import json

import pytest

from sudokurace.backend.models import (
    BookOfTheMonth,
    MemberStatus,
    PartyInvariantError,
    PartyRole,
    PartySettings,
    ServerState,
)
from sudokurace.backend.store import InMemorySessionRecordStore, PostgresSessionRecordStore, create_store

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _state(*answers: str) -> ServerState:
    return ServerState(answer_stack=list(answers) or ["g0"], initial="g0", final="g9")


def test_create_store_returns_postgres_store_when_database_url_present() -> None:
    store = create_store(database_url="postgresql://local")

    assert isinstance(store, PostgresSessionRecordStore)


def test_create_store_returns_in_memory_store_when_database_url_missing() -> None:
    store = create_store(database_url=None, retention_days=7)

    assert isinstance(store, InMemorySessionRecordStore)
    assert store.retention_days == 7


def test_save_session_keeps_created_at_and_defaults_expiry() -> None:
    store = InMemorySessionRecordStore()

    first = store.save_session("user-1", "sudoku-p1", _state("g0"))
    second = store.save_session("user-1", "sudoku-p1", _state("g0", "g1"))

    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at
    assert second.expires_at is not None
    assert timedelta(days=31) < second.expires_at - second.updated_at <= timedelta(days=32)
    fetched = store.get_session("user-1", "sudoku-p1")
    assert fetched is not None
    assert fetched.state.answer_stack == ["g0", "g1"]


def test_saving_same_state_twice_changes_only_updated_at() -> None:
    store = InMemorySessionRecordStore()
    expires = CREATED + timedelta(days=40)

    first = store.save_session("user-1", "sudoku-p1", _state("g0", "g1"), expires)
    second = store.save_session("user-1", "sudoku-p1", _state("g0", "g1"), expires)

    assert second.state == first.state
    assert second.created_at == first.created_at
    assert second.expires_at == first.expires_at


def test_expired_sessions_are_invisible() -> None:
    store = InMemorySessionRecordStore()
    store.save_session("user-1", "sudoku-old", _state(), CREATED)

    assert store.get_session("user-1", "sudoku-old") is None
    assert store.list_sessions("user-1") == []


def test_get_session_includes_party_members_sessions_for_same_puzzle() -> None:
    store = InMemorySessionRecordStore()
    record = store.create_party("user-1", "Racers", "Ann")
    store.join_party(record.party.party_id, "user-2", "Bob")
    store.save_session("user-2", "sudoku-p1", _state("g0", "bob"))
    store.save_session("user-2", "sudoku-p2", _state("g0", "other"))

    saved = store.save_session("user-1", "sudoku-p1", _state("g0", "ann"))

    party = saved.parties[record.party.party_id]
    assert list(party.member_sessions) == ["user-2"]
    assert party.member_sessions["user-2"].state.answer_stack == ["g0", "bob"]


def test_list_sessions_of_other_user_requires_shared_party() -> None:
    store = InMemorySessionRecordStore()
    store.save_session("user-2", "sudoku-p1", _state())

    assert store.list_sessions("user-1", member_id="user-2") is None

    record = store.create_party("user-1", "Racers", "Ann")
    store.join_party(record.party.party_id, "user-2", "Bob")
    listed = store.list_sessions("user-1", party_id=record.party.party_id, member_id="user-2")

    assert listed is not None
    assert [session.session_id for session in listed] == ["sudoku-p1"]
    assert store.list_sessions("user-1", party_id="other-party", member_id="user-2") is None


def test_create_party_makes_creator_the_owner() -> None:
    store = InMemorySessionRecordStore()

    record = store.create_party("user-1", "Racers", "Ann", settings=PartySettings(max_members=2))

    owner = record.member("user-1")
    assert owner is not None
    assert owner.role == PartyRole.OWNER
    assert record.party.created_by == "user-1"
    assert store.list_parties("user-1") == [record]


def test_leave_party_marks_member_left_and_owner_cannot_leave() -> None:
    store = InMemorySessionRecordStore()
    record = store.create_party("user-1", "Racers", "Ann")
    party_id = record.party.party_id
    store.join_party(party_id, "user-2", "Bob")

    left = store.leave_party(party_id, "user-2")

    assert left is not None
    assert left.member("user-2").status == MemberStatus.LEFT
    assert store.list_parties("user-2") == []
    with pytest.raises(PartyInvariantError):
        store.leave_party(party_id, "user-1")
    assert store.leave_party(party_id, "stranger") is None


def test_rejoining_reactivates_member_and_full_party_rejects() -> None:
    store = InMemorySessionRecordStore()
    record = store.create_party("user-1", "Racers", "Ann", settings=PartySettings(max_members=2))
    party_id = record.party.party_id
    store.join_party(party_id, "user-2", "Bob")
    store.leave_party(party_id, "user-2")

    rejoined = store.join_party(party_id, "user-2", "Bobby")

    assert rejoined is not None
    assert rejoined.member("user-2").status == MemberStatus.ACTIVE
    assert rejoined.member("user-2").member_nickname == "Bobby"
    with pytest.raises(PartyInvariantError):
        store.join_party(party_id, "user-3", "Cy")
    assert store.join_party("missing", "user-3", "Cy") is None


def test_book_of_the_month_round_trip() -> None:
    store = InMemorySessionRecordStore()
    book = BookOfTheMonth(book_id="book-1", month="2024-05", puzzles=[], created_at=CREATED, updated_at=CREATED)

    assert store.get_book_of_the_month() is None
    store.set_book_of_the_month(book)

    assert store.get_book_of_the_month() == book


class _FakeCursor:
    def __init__(self, rows: list[list[tuple]] | None = None) -> None:
        self.commands: list[tuple[str, tuple]] = []
        self.rows = list(rows or [])
        self._current: list[tuple] = []

    def execute(self, sql: str, params: tuple = ()) -> None:
        self.commands.append((sql, params))
        self._current = self.rows.pop(0) if self.rows else []

    def fetchone(self) -> tuple | None:
        return self._current[0] if self._current else None

    def fetchall(self) -> list[tuple]:
        return list(self._current)

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self, rows: list[list[tuple]] | None = None) -> None:
        self.cursor_instance = _FakeCursor(rows)
        self.committed = False

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def commit(self) -> None:
        self.committed = True

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _PostgresStoreWithFakeConnection(PostgresSessionRecordStore):
    def __init__(self, rows: list[list[tuple]] | None = None) -> None:
        super().__init__(database_url="postgresql://local")
        self.fake_connection = _FakeConnection(rows)

    def _connect(self) -> _FakeConnection:
        return self.fake_connection


def test_postgres_save_session_upserts_and_reads_party_sessions() -> None:
    member_state = json.dumps(_state("g0", "bob").to_dict())
    store = _PostgresStoreWithFakeConnection(
        rows=[
            [(CREATED,)],
            [
                ("party-1", "user-2", member_state, CREATED, CREATED, None),
                ("party-1", None, None, None, None, None),
            ],
        ]
    )

    saved = store.save_session("user-1", "sudoku-p1", _state("g0", "g1", "g2", "g3"))

    commands = store.fake_connection.cursor_instance.commands
    assert store.fake_connection.committed is True
    assert "INSERT INTO sessions" in commands[0][0]
    assert "ON CONFLICT (user_id, session_id)" in commands[0][0]
    assert json.loads(commands[0][1][2])["answerStack"] == ["g0", "g1", "g2", "g3"]
    assert saved.created_at == CREATED
    assert saved.parties["party-1"].member_sessions["user-2"].state.answer_stack == ["g0", "bob"]


def test_postgres_get_session_returns_none_when_missing() -> None:
    store = _PostgresStoreWithFakeConnection(rows=[[]])

    assert store.get_session("user-1", "sudoku-p1") is None
    assert len(store.fake_connection.cursor_instance.commands) == 1


def test_postgres_list_sessions_of_stranger_is_forbidden() -> None:
    store = _PostgresStoreWithFakeConnection(rows=[[]])

    assert store.list_sessions("user-1", member_id="user-2") is None
    assert "FROM parties" in store.fake_connection.cursor_instance.commands[0][0]


def test_postgres_create_party_writes_party_and_owner() -> None:
    store = _PostgresStoreWithFakeConnection()

    record = store.create_party("user-1", "Racers", "Ann")

    commands = store.fake_connection.cursor_instance.commands
    assert store.fake_connection.committed is True
    assert "INSERT INTO parties" in commands[0][0]
    assert "INSERT INTO party_members" in commands[1][0]
    assert commands[1][1][:5] == (record.party.party_id, "user-1", "Ann", "owner", "active")


def test_postgres_get_party_groups_member_rows() -> None:
    store = _PostgresStoreWithFakeConnection(
        rows=[
            [
                ("party-1", "Racers", None, "user-1", None, CREATED, CREATED, "user-1", "Ann", "owner", "active", CREATED),
                ("party-1", "Racers", None, "user-1", None, CREATED, CREATED, "user-2", "Bob", "member", "left", CREATED),
            ]
        ]
    )

    record = store.get_party("party-1")

    assert record is not None
    assert [member.user_id for member in record.members] == ["user-1", "user-2"]
    assert record.is_active_member("user-1") is True
    assert record.is_active_member("user-2") is False
