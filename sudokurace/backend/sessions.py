"""Session lists: the user's own puzzles merged with the server's, plus friends' histories."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Iterable

from .client import ServerStorage, ServerStorageError
from .models import (
    AllFriendsSessionsMap,
    MemberStatus,
    PartyRecord,
    ServerState,
    ServerStateResult,
    Session,
    SessionParty,
)
from .online import OnlineStatus
from .reconcile import ReconciliationEngine
from .session_store import LocalSessionStore, puzzle_id_for

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 32


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def merge_sessions(
    previous: Iterable[ServerStateResult[ServerState]] | None,
    incoming: Iterable[ServerStateResult[ServerState]],
) -> list[ServerStateResult[ServerState]]:
    """Union by session id where the newest ``updatedAt`` wins, sorted newest first."""
    ordered = sorted(
        [*incoming, *(previous or [])],
        key=lambda session: session.updated_at,
        reverse=True,
    )
    merged: dict[str, ServerStateResult[ServerState]] = {}
    for session in ordered:
        merged.setdefault(session.session_id, session)
    return list(merged.values())


def _as_result(session: Session[ServerState]) -> ServerStateResult[ServerState]:
    if isinstance(session, ServerStateResult):
        return session
    return ServerStateResult(
        session_id=session.session_id,
        user_id=session.user_id,
        state=session.state,
        created_at=session.created_at,
        updated_at=session.updated_at,
        expires_at=session.expires_at,
    )


@dataclass(frozen=True)
class FriendSessions:
    is_loading: bool = False
    sessions: list[ServerStateResult[ServerState]] | None = None


class SessionsService:
    def __init__(
        self,
        session_store: LocalSessionStore,
        server: ServerStorage,
        online: OnlineStatus,
        engine: ReconciliationEngine,
        window_days: int = DEFAULT_WINDOW_DAYS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = session_store
        self._server = server
        self._online = online
        self._engine = engine
        self._window = timedelta(days=window_days)
        self._clock = clock
        self.sessions: list[ServerStateResult[ServerState]] | None = None
        self.is_loading = False
        self.friend_sessions: dict[str, FriendSessions] = {}
        self.is_friend_sessions_loading = False

    def _recent(self, sessions: Iterable[ServerStateResult[ServerState]]) -> list[ServerStateResult[ServerState]]:
        cutoff = self._clock() - self._window
        return [session for session in sessions if session.updated_at >= cutoff]

    def _save_missing_locally(self, server_sessions: list[ServerStateResult[ServerState]]) -> None:
        known = {session.session_id for session in self.sessions or []}
        for session in server_sessions:
            puzzle_id = puzzle_id_for(session.session_id)
            if session.session_id in known or puzzle_id is None:
                continue
            logger.info("Saving missing local puzzle %s", puzzle_id)
            self._engine.adopt(session)

    async def load(self, force: bool = False) -> list[ServerStateResult[ServerState]] | None:
        """Local sessions first, then recent server sessions merged over them."""
        if not force and self.sessions:
            return self.sessions
        if self.is_loading:
            return self.sessions

        self.is_loading = True
        try:
            local = self._store.list_local()
            if local:
                self.sessions = local
            if not self._online.is_online:
                return self.sessions
            try:
                server_sessions = self._recent(await self._server.list_sessions())
            except ServerStorageError as exc:
                logger.warning("Keeping local sessions, server list failed: %s", exc)
                return self.sessions
            if server_sessions:
                self._save_missing_locally(server_sessions)
                self.sessions = merge_sessions(self.sessions, server_sessions)
        finally:
            self.is_loading = False
        return self.sessions

    def clear(self) -> None:
        self.sessions = None

    async def _load_friend(self, user_id: str, party_id: str) -> tuple[str, list[ServerStateResult[ServerState]] | None]:
        try:
            sessions = await self._server.list_sessions(party_id=party_id, user_id=user_id)
        except ServerStorageError as exc:
            logger.error("Error fetching sessions for user %s: %s", user_id, exc)
            return user_id, None
        return user_id, self._recent(sessions)

    async def fetch_friend_sessions(self, parties: Iterable[PartyRecord]) -> AllFriendsSessionsMap:
        """Load every active member's sessions once; users already loaded or loading are skipped."""
        if self.is_friend_sessions_loading or not self._online.is_online:
            return self.all_friends_sessions()

        party_of: dict[str, str] = {}
        for record in parties:
            for member in record.members:
                if member.status == MemberStatus.ACTIVE:
                    party_of.setdefault(member.user_id, record.party.party_id)

        pending = [
            user_id
            for user_id in party_of
            if user_id not in self.friend_sessions
            or (not self.friend_sessions[user_id].is_loading and self.friend_sessions[user_id].sessions is None)
        ]
        if not pending:
            return self.all_friends_sessions()

        self.is_friend_sessions_loading = True
        for user_id in pending:
            self.friend_sessions[user_id] = FriendSessions(is_loading=True)
        try:
            results = await asyncio.gather(*(self._load_friend(user_id, party_of[user_id]) for user_id in pending))
            for user_id, sessions in results:
                self.friend_sessions[user_id] = FriendSessions(is_loading=False, sessions=sessions)
        finally:
            self.is_friend_sessions_loading = False
        return self.all_friends_sessions()

    def all_friends_sessions(self) -> AllFriendsSessionsMap:
        return {user_id: list(entry.sessions or []) for user_id, entry in self.friend_sessions.items()}

    def clear_friend_sessions(self) -> None:
        self.friend_sessions = {}

    def session_parties(self, parties: Iterable[PartyRecord], session_id: str) -> dict[str, SessionParty[ServerState]]:
        """Loaded friends' attempts at one session, grouped under each party."""
        result: dict[str, SessionParty[ServerState]] = {}
        for record in parties:
            member_sessions: dict[str, Session[ServerState]] = {}
            for member in record.members:
                entry = self.friend_sessions.get(member.user_id)
                for session in (entry.sessions if entry else None) or []:
                    if session.session_id == session_id:
                        member_sessions[member.user_id] = session
                        break
            result[record.party.party_id] = SessionParty(member_sessions=member_sessions)
        return result

    def patch_friend_sessions(self, session_id: str, member_sessions: dict[str, Session[ServerState]]) -> None:
        """Swap one session into friends' already loaded lists."""
        if self.is_friend_sessions_loading:
            return
        for user_id, session in member_sessions.items():
            entry = self.friend_sessions.get(user_id)
            if entry is None or entry.is_loading or entry.sessions is None:
                continue
            sessions = [existing for existing in entry.sessions if existing.session_id != session_id]
            sessions.append(_as_result(session))
            self.friend_sessions[user_id] = FriendSessions(is_loading=False, sessions=sessions)
