from datetime import datetime, timezone

import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from sudokurace.backend.api import create_app
from sudokurace.backend.models import BookOfTheMonth, Completion, PuzzleMetadata, ServerState
from sudokurace.backend.store import InMemorySessionRecordStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def _daily_state(seconds: int) -> dict:
    return ServerState(
        answer_stack=["g0", "g9"],
        initial="g0",
        final="g9",
        completed=Completion(at=NOW, seconds=seconds),
        metadata=PuzzleMetadata(difficulty="simple", sudoku_id="oftheday-2024-05-01"),
    ).to_dict()


def _party(client: TestClient, owner: str = "alice", **settings) -> str:
    payload = {"name": "Racers", "memberNickname": owner.title()}
    if settings:
        payload["settings"] = settings
    response = client.post("/api/parties", json=payload, headers=_as(owner))
    assert response.status_code == 200
    return response.json()["partyId"]


def test_patch_then_get_session_returns_stored_state() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))

    patched = client.patch(
        "/api/sessions/sudoku-p1",
        json={"state": {"answerStack": ["g0", "g1"], "initial": "g0", "final": "g9"}},
        headers=_as("alice"),
    )
    fetched = client.get("/api/sessions/sudoku-p1", headers=_as("alice"))

    assert patched.status_code == 200
    assert fetched.status_code == 200
    data = fetched.json()
    assert data["sessionId"] == "sudoku-p1"
    assert data["userId"] == "alice"
    assert data["state"]["answerStack"] == ["g0", "g1"]
    assert data["updatedAt"] == patched.json()["updatedAt"]
    assert data["parties"] == {}


def test_sessions_are_scoped_to_the_calling_user() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))
    client.patch("/api/sessions/sudoku-p1", json={"state": {"answerStack": []}}, headers=_as("alice"))

    response = client.get("/api/sessions/sudoku-p1", headers=_as("bob"))

    assert response.status_code == 404


def test_requests_without_user_header_are_rejected() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))

    response = client.get("/api/sessions/sudoku-p1")

    assert response.status_code == 422


def test_patch_rejects_malformed_state() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))

    response = client.patch("/api/sessions/sudoku-p1", json={"state": {"answerStack": 5}}, headers=_as("alice"))

    assert response.status_code == 422


def test_list_sessions_of_party_member_requires_shared_party() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))
    client.patch("/api/sessions/sudoku-p1", json={"state": {"answerStack": ["bob"]}}, headers=_as("bob"))

    forbidden = client.get("/api/sessions", params={"userId": "bob"}, headers=_as("alice"))
    party_id = _party(client)
    client.post(f"/api/parties/{party_id}/members", json={"memberNickname": "Bob"}, headers=_as("bob"))
    allowed = client.get("/api/sessions", params={"partyId": party_id, "userId": "bob"}, headers=_as("alice"))

    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert [session["sessionId"] for session in allowed.json()] == ["sudoku-p1"]


def test_get_session_includes_party_member_attempts() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))
    party_id = _party(client)
    client.post(f"/api/parties/{party_id}/members", json={"memberNickname": "Bob"}, headers=_as("bob"))
    client.patch("/api/sessions/sudoku-p1", json={"state": {"answerStack": ["bob"]}}, headers=_as("bob"))
    client.patch("/api/sessions/sudoku-p1", json={"state": {"answerStack": ["alice"]}}, headers=_as("alice"))

    data = client.get("/api/sessions/sudoku-p1", headers=_as("alice")).json()

    member_sessions = data["parties"][party_id]["memberSessions"]
    assert list(member_sessions) == ["bob"]
    assert member_sessions["bob"]["state"]["answerStack"] == ["bob"]


def test_book_of_the_month_endpoint() -> None:
    store = InMemorySessionRecordStore()
    client = TestClient(create_app(store=store))

    missing = client.get("/api/books/current")
    store.set_book_of_the_month(
        BookOfTheMonth(book_id="book-1", month="2024-05", puzzles=[], created_at=NOW, updated_at=NOW)
    )
    found = client.get("/api/books/current")

    assert missing.status_code == 404
    assert found.status_code == 200
    assert found.json()["bookId"] == "book-1"


def test_party_membership_lifecycle() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))
    party_id = _party(client)

    joined = client.post(f"/api/parties/{party_id}/members", json={"memberNickname": "Bob"}, headers=_as("bob"))
    listed = client.get("/api/parties", headers=_as("bob"))
    left = client.delete(f"/api/parties/{party_id}/members/me", headers=_as("bob"))
    owner_leaves = client.delete(f"/api/parties/{party_id}/members/me", headers=_as("alice"))
    unknown = client.post("/api/parties/nope/members", json={"memberNickname": "Bob"}, headers=_as("bob"))

    assert joined.status_code == 200
    assert [party["partyId"] for party in listed.json()] == [party_id]
    assert left.status_code == 200
    assert {member["userId"]: member["status"] for member in left.json()["members"]}["bob"] == "left"
    assert client.get("/api/parties", headers=_as("bob")).json() == []
    assert owner_leaves.status_code == 400
    assert unknown.status_code == 404


def test_full_party_rejects_new_members() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))
    party_id = _party(client, maxMembers=1)

    response = client.post(f"/api/parties/{party_id}/members", json={"memberNickname": "Bob"}, headers=_as("bob"))

    assert response.status_code == 400


def test_leaderboard_ranks_party_members() -> None:
    client = TestClient(create_app(store=InMemorySessionRecordStore()))
    party_id = _party(client)
    client.post(f"/api/parties/{party_id}/members", json={"memberNickname": "Bob"}, headers=_as("bob"))
    client.post(f"/api/parties/{party_id}/members", json={"memberNickname": "Cid"}, headers=_as("cid"))
    client.patch("/api/sessions/sudoku-d1", json={"state": _daily_state(2000)}, headers=_as("alice"))
    client.patch("/api/sessions/sudoku-d1", json={"state": _daily_state(200)}, headers=_as("bob"))

    response = client.get(f"/api/parties/{party_id}/leaderboard", headers=_as("alice"))
    outsider = client.get(f"/api/parties/{party_id}/leaderboard", headers=_as("eve"))
    missing = client.get("/api/parties/nope/leaderboard", headers=_as("alice"))

    assert response.status_code == 200
    entries = response.json()["entries"]
    assert [entry["userId"] for entry in entries] == ["bob", "alice", "cid"]
    assert entries[0]["username"] == "Bob"
    assert entries[0]["stats"]["racingWins"] == 1
    assert entries[2]["totalScore"] == 0
    assert outsider.status_code == 403
    assert missing.status_code == 404
