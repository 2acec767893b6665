from datetime import datetime, timezone

import pytest

httpx = pytest.importorskip("httpx")
pytest.importorskip("fastapi")

from sudokurace.backend.api import create_app
from sudokurace.backend.client import HttpServerStorage, LocalServerStorage, ServerStorageError
from sudokurace.backend.models import BookOfTheMonth, ServerState
from sudokurace.backend.store import InMemorySessionRecordStore

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _state(*answers: str) -> ServerState:
    return ServerState(answer_stack=list(answers), initial="g0", final="g9")


def _http_storage(store: InMemorySessionRecordStore, user_id: str) -> HttpServerStorage:
    return HttpServerStorage(
        base_url="http://testserver",
        user_id=user_id,
        transport=httpx.ASGITransport(app=create_app(store=store)),
    )


@pytest.mark.asyncio
async def test_http_storage_round_trips_sessions_through_api() -> None:
    store = InMemorySessionRecordStore()
    server = _http_storage(store, "user-1")

    try:
        assert await server.get_session("sudoku-p1") is None
        pushed = await server.put_session("sudoku-p1", _state("g0", "g1"))
        fetched = await server.get_session("sudoku-p1")
        listed = await server.list_sessions()
    finally:
        await server.shutdown()

    assert pushed.session_id == "sudoku-p1"
    assert pushed.user_id == "user-1"
    assert fetched is not None
    assert fetched.state.answer_stack == ["g0", "g1"]
    assert fetched.updated_at == pushed.updated_at
    assert [session.session_id for session in listed] == ["sudoku-p1"]


@pytest.mark.asyncio
async def test_http_storage_reads_book_of_the_month() -> None:
    store = InMemorySessionRecordStore()
    server = _http_storage(store, "user-1")

    try:
        assert await server.get_book_of_the_month() is None
        store.set_book_of_the_month(
            BookOfTheMonth(
                book_id="book-1",
                month="2024-05",
                puzzles=[{"sudokuBookPuzzleId": "b1", "difficulty": "hard"}],
                created_at=CREATED,
                updated_at=CREATED,
            )
        )
        book = await server.get_book_of_the_month()
    finally:
        await server.shutdown()

    assert book is not None
    assert book.book_id == "book-1"
    assert book.puzzles[0]["difficulty"] == "hard"


@pytest.mark.asyncio
async def test_http_storage_raises_on_forbidden_listing() -> None:
    store = InMemorySessionRecordStore()
    server = _http_storage(store, "user-1")

    try:
        with pytest.raises(ServerStorageError):
            await server.list_sessions(user_id="stranger")
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_http_storage_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "down"})

    server = HttpServerStorage(
        base_url="http://testserver",
        user_id="user-1",
        transport=httpx.MockTransport(handler),
    )

    try:
        with pytest.raises(ServerStorageError):
            await server.get_session("sudoku-p1")
    finally:
        await server.shutdown()


@pytest.mark.asyncio
async def test_http_storage_sends_user_header() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["X-User-Id"])
        return httpx.Response(404)

    server = HttpServerStorage(base_url="http://testserver", user_id="user-7", transport=httpx.MockTransport(handler))

    try:
        assert await server.get_session("sudoku-p1") is None
    finally:
        await server.shutdown()

    assert seen == ["user-7"]


@pytest.mark.asyncio
async def test_local_storage_delegates_to_store() -> None:
    store = InMemorySessionRecordStore()
    server = LocalServerStorage(store, "user-1")

    pushed = await server.put_session("sudoku-p1", _state("g0"))

    assert (await server.get_session("sudoku-p1")).updated_at == pushed.updated_at
    assert len(await server.list_sessions()) == 1
    with pytest.raises(ServerStorageError):
        await server.list_sessions(user_id="stranger")


@pytest.mark.asyncio
async def test_http_storage_wraps_unreadable_success_bodies() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/books/current":
            return httpx.Response(200, json={"month": "2024-05"})
        return httpx.Response(200, text="<html>maintenance</html>")

    server = HttpServerStorage(base_url="http://testserver", user_id="user-1", transport=httpx.MockTransport(handler))

    try:
        with pytest.raises(ServerStorageError):
            await server.get_session("sudoku-p1")
        with pytest.raises(ServerStorageError):
            await server.put_session("sudoku-p1", _state("g0"))
        with pytest.raises(ServerStorageError):
            await server.get_book_of_the_month()
    finally:
        await server.shutdown()
