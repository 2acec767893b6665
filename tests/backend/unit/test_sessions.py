from datetime import date, datetime, timedelta, timezone

import pytest

from sudokurace.backend.client import LocalServerStorage, ServerStorageError
from sudokurace.backend.limiter import DailyActionLimiter
from sudokurace.backend.models import ServerState, ServerStateResult, Session
from sudokurace.backend.online import OnlineSignal
from sudokurace.backend.reconcile import ReconciliationEngine, SyncAction, SyncStatus
from sudokurace.backend.session_store import LocalSessionStore
from sudokurace.backend.sessions import SessionsService, merge_sessions
from sudokurace.backend.storage import InMemoryKeyValueStorage
from sudokurace.backend.store import InMemorySessionRecordStore

NOW = datetime(2024, 5, 20, 9, 0, tzinfo=timezone.utc)


def _result(session_id: str, updated_at: datetime, user_id: str = "user-1", *answers: str) -> ServerStateResult[ServerState]:
    return ServerStateResult(
        session_id=session_id,
        user_id=user_id,
        state=ServerState(answer_stack=list(answers) or ["g0"]),
        created_at=updated_at,
        updated_at=updated_at,
    )


class _FailingServer:
    async def list_sessions(self, party_id=None, user_id=None):
        raise ServerStorageError("connection refused")


class _Env:
    def __init__(self, online: bool = True) -> None:
        self.server_store = InMemorySessionRecordStore(clock=lambda: NOW)
        storage = InMemoryKeyValueStorage()
        limiter = DailyActionLimiter(storage, today=lambda: date(2024, 5, 20))
        self.local = LocalSessionStore(storage, limiter, user_id="user-1", clock=lambda: NOW)
        self.online = OnlineSignal(network_online=online)
        self.server = LocalServerStorage(self.server_store, "user-1")
        self.engine = ReconciliationEngine(self.local, self.server, self.online, clock=lambda: NOW)
        self.service = SessionsService(self.local, self.server, self.online, self.engine, clock=lambda: NOW)


def test_merge_keeps_newest_copy_of_each_session() -> None:
    older = _result("sudoku-a", NOW - timedelta(hours=2), "user-1", "old")
    newer = _result("sudoku-a", NOW - timedelta(hours=1), "user-1", "new")
    other = _result("sudoku-b", NOW)

    merged = merge_sessions([older], [newer, other])

    assert [session.session_id for session in merged] == ["sudoku-b", "sudoku-a"]
    assert merged[1].state.answer_stack == ["new"]
    assert merge_sessions(None, [older]) == [older]


@pytest.mark.asyncio
async def test_load_merges_server_sessions_and_saves_missing_locally() -> None:
    env = _Env()
    env.local.start("p1", "g0", "g9")
    env.server_store.save_session("user-1", "sudoku-p2", ServerState(answer_stack=["g0", "g1"]))

    sessions = await env.service.load()

    assert sorted(session.session_id for session in sessions) == ["sudoku-p1", "sudoku-p2"]
    assert env.local.get("p2").state.answer_stack == ["g0", "g1"]
    assert env.service.is_loading is False


@pytest.mark.asyncio
async def test_load_is_cached_until_forced() -> None:
    env = _Env()
    env.local.start("p1", "g0", "g9")
    first = await env.service.load()
    env.server_store.save_session("user-1", "sudoku-p3", ServerState(answer_stack=["g0"]))

    assert await env.service.load() is first
    forced = await env.service.load(force=True)

    assert "sudoku-p3" in {session.session_id for session in forced}


@pytest.mark.asyncio
async def test_load_offline_uses_local_sessions_only() -> None:
    env = _Env(online=False)
    env.local.start("p1", "g0", "g9")
    env.server_store.save_session("user-1", "sudoku-p2", ServerState(answer_stack=["g0"]))

    sessions = await env.service.load()

    assert [session.session_id for session in sessions] == ["sudoku-p1"]


@pytest.mark.asyncio
async def test_load_keeps_local_sessions_when_server_fails() -> None:
    env = _Env()
    env.local.start("p1", "g0", "g9")
    service = SessionsService(env.local, _FailingServer(), env.online, env.engine, clock=lambda: NOW)

    sessions = await service.load()

    assert [session.session_id for session in sessions] == ["sudoku-p1"]


@pytest.mark.asyncio
async def test_friend_sessions_are_loaded_for_active_party_members() -> None:
    env = _Env()
    record = env.server_store.create_party("user-1", "Racers", "Ann")
    env.server_store.join_party(record.party.party_id, "user-2", "Bob")
    env.server_store.save_session("user-2", "sudoku-p1", ServerState(answer_stack=["bob"]))
    parties = env.server_store.list_parties("user-1")

    friends = await env.service.fetch_friend_sessions(parties)

    assert [session.session_id for session in friends["user-2"]] == ["sudoku-p1"]
    assert friends["user-1"] == []
    assert env.service.friend_sessions["user-2"].is_loading is False

    by_party = env.service.session_parties(parties, "sudoku-p1")
    assert list(by_party[record.party.party_id].member_sessions) == ["user-2"]


@pytest.mark.asyncio
async def test_friend_sessions_skip_users_already_loaded() -> None:
    env = _Env()
    record = env.server_store.create_party("user-1", "Racers", "Ann")
    env.server_store.join_party(record.party.party_id, "user-2", "Bob")
    parties = env.server_store.list_parties("user-1")
    await env.service.fetch_friend_sessions(parties)
    env.server_store.save_session("user-2", "sudoku-p1", ServerState(answer_stack=["bob"]))

    friends = await env.service.fetch_friend_sessions(parties)

    assert friends["user-2"] == []
    env.service.clear_friend_sessions()
    friends = await env.service.fetch_friend_sessions(parties)
    assert len(friends["user-2"]) == 1


@pytest.mark.asyncio
async def test_patch_replaces_one_session_in_loaded_friend_lists() -> None:
    env = _Env()
    record = env.server_store.create_party("user-1", "Racers", "Ann")
    env.server_store.join_party(record.party.party_id, "user-2", "Bob")
    env.server_store.save_session("user-2", "sudoku-p1", ServerState(answer_stack=["old"]))
    await env.service.fetch_friend_sessions(env.server_store.list_parties("user-1"))

    updated = Session(
        session_id="sudoku-p1",
        user_id="user-2",
        state=ServerState(answer_stack=["new"]),
        created_at=NOW,
        updated_at=NOW,
    )
    env.service.patch_friend_sessions("sudoku-p1", {"user-2": updated, "user-9": updated})

    sessions = env.service.all_friends_sessions()
    assert [session.state.answer_stack for session in sessions["user-2"]] == [["new"]]
    assert isinstance(sessions["user-2"][0], ServerStateResult)
    assert "user-9" not in sessions


@pytest.mark.asyncio
async def test_sessions_saved_from_server_list_are_not_local_edits() -> None:
    env = _Env()
    saved = env.server_store.save_session("user-1", "sudoku-p2", ServerState(answer_stack=["g0", "g1"]))
    env.engine.track("sudoku-p2")

    await env.service.load()

    record = env.engine.record("sudoku-p2")
    assert record.status == SyncStatus.SYNCED
    assert record.has_local_edits is False
    assert record.baseline == saved.updated_at
    outcome = await env.engine.reconcile("sudoku-p2")
    assert outcome.action == SyncAction.NOOP
