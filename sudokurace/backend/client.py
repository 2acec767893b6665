"""Server storage collaborator: the protocol plus HTTP and in-process implementations."""

from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Any, Callable, Protocol

import httpx

from .models import (
    BookOfTheMonth,
    ServerState,
    ServerStateResult,
    format_timestamp,
    server_state_result_from_dict,
)
from .store import SessionRecordStore

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


class ServerStorageError(RuntimeError):
    """Raised when the server storage collaborator rejects or cannot serve a call."""


class ServerStorage(Protocol):
    async def get_session(self, session_id: str) -> ServerStateResult[ServerState] | None:
        """Return the caller's session, or None when the server has no copy."""

    async def put_session(
        self,
        session_id: str,
        state: ServerState,
        expires_at: datetime | None = None,
    ) -> ServerStateResult[ServerState]:
        """Store the caller's session and return the server's view of it."""

    async def list_sessions(
        self,
        party_id: str | None = None,
        user_id: str | None = None,
    ) -> list[ServerStateResult[ServerState]]:
        """List the caller's sessions, or a fellow party member's."""

    async def get_book_of_the_month(self) -> BookOfTheMonth | None:
        """Return the current puzzle book, or None when none is published."""


class HttpServerStorage:
    """httpx client for the session service, identifying the caller by header."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_id = user_id
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        async with self._lock:
            if self._client is None:
                logger.info("Connecting to session service at %s", self._base_url)
                self._client = httpx.AsyncClient(
                    base_url=self._base_url,
                    timeout=self._timeout,
                    headers={USER_HEADER: self._user_id},
                    transport=self._transport,
                )

    async def shutdown(self) -> None:
        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.startup()
        assert self._client is not None
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        allow_missing: bool = False,
        parse: Callable[[Any], Any] = lambda data: data,
        **kwargs: Any,
    ) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, **kwargs)
            if allow_missing and response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Session service request %s %s failed: %s", method, path, exc)
            raise ServerStorageError(f"session service request failed: {exc}") from exc
        try:
            return parse(response.json())
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.error("Session service returned an unreadable body for %s %s: %s", method, path, exc)
            raise ServerStorageError(f"unreadable session service response: {exc}") from exc

    async def get_session(self, session_id: str) -> ServerStateResult[ServerState] | None:
        return await self._request(
            "GET", f"/api/sessions/{session_id}", allow_missing=True, parse=server_state_result_from_dict
        )

    async def put_session(
        self,
        session_id: str,
        state: ServerState,
        expires_at: datetime | None = None,
    ) -> ServerStateResult[ServerState]:
        payload = {"state": state.to_dict(), "expiresAt": format_timestamp(expires_at)}
        return await self._request(
            "PATCH", f"/api/sessions/{session_id}", json=payload, parse=server_state_result_from_dict
        )

    async def list_sessions(
        self,
        party_id: str | None = None,
        user_id: str | None = None,
    ) -> list[ServerStateResult[ServerState]]:
        params = {key: value for key, value in (("partyId", party_id), ("userId", user_id)) if value}
        return await self._request(
            "GET",
            "/api/sessions",
            params=params,
            parse=lambda data: [server_state_result_from_dict(item) for item in data],
        )

    async def get_book_of_the_month(self) -> BookOfTheMonth | None:
        return await self._request("GET", "/api/books/current", allow_missing=True, parse=BookOfTheMonth.from_dict)


class LocalServerStorage:
    """In-process collaborator backed directly by a session record store."""

    def __init__(self, store: SessionRecordStore, user_id: str) -> None:
        self._store = store
        self._user_id = user_id

    async def get_session(self, session_id: str) -> ServerStateResult[ServerState] | None:
        return self._store.get_session(self._user_id, session_id)

    async def put_session(
        self,
        session_id: str,
        state: ServerState,
        expires_at: datetime | None = None,
    ) -> ServerStateResult[ServerState]:
        return self._store.save_session(self._user_id, session_id, state, expires_at)

    async def list_sessions(
        self,
        party_id: str | None = None,
        user_id: str | None = None,
    ) -> list[ServerStateResult[ServerState]]:
        sessions = self._store.list_sessions(self._user_id, party_id=party_id, member_id=user_id)
        if sessions is None:
            raise ServerStorageError(f"sessions of {user_id} are not shared with {self._user_id}")
        return sessions

    async def get_book_of_the_month(self) -> BookOfTheMonth | None:
        return self._store.get_book_of_the_month()
