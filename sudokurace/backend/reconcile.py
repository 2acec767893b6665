"""Reconciliation of local puzzle copies against the server-authoritative sessions.

Every tracked session carries a :class:`SyncRecord` whose status moves through
``LOCAL_ONLY -> SYNCING -> SYNCED``. When the server copy has advanced past the
last synced baseline while local edits are still pending, the record passes
through ``CONFLICTED`` and settles in ``STALE_SERVER_WINS``: the server copy
replaces the local one and the local edits are dropped. There is no field-level
merge of grids.

The decision itself lives in :func:`decide_sync`, a pure function over
envelope timestamps, so the policy can be exercised without any I/O.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
import itertools
import logging
from typing import Callable

from .client import ServerStorage, ServerStorageError
from .models import ServerState, ServerStateResult, SessionParty
from .online import OnlineStatus
from .session_store import LocalSessionStore, puzzle_id_for, session_id_for
from .state import shrink_for_server

logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = "You are offline, please check your connection"
FAILED_TO_LOAD_MESSAGE = "Failed to load session"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    LOCAL_ONLY = "local-only"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICTED = "conflicted"
    STALE_SERVER_WINS = "stale-server-wins"


class SyncAction(str, Enum):
    NOOP = "noop"
    PUSH = "push"
    PULL = "pull"
    SERVER_WINS = "server-wins"


@dataclass(frozen=True)
class SyncDecision:
    action: SyncAction
    reason: str


@dataclass(frozen=True)
class SyncRecord:
    session_id: str
    generation: int
    status: SyncStatus = SyncStatus.LOCAL_ONLY
    baseline: datetime | None = None
    has_local_edits: bool = False
    last_error: str | None = None
    last_synced_at: datetime | None = None


@dataclass(frozen=True)
class SyncOutcome:
    session_id: str
    status: SyncStatus | None
    action: SyncAction | None = None
    message: str | None = None
    discarded: bool = False
    parties: dict[str, SessionParty[ServerState]] = field(default_factory=dict)


def decide_sync(
    local: datetime | None,
    server: datetime | None,
    baseline: datetime | None,
    has_local_edits: bool,
) -> SyncDecision:
    """Choose how to converge a local copy with the server copy.

    ``local`` is the local copy's last update, ``server`` the server copy's
    ``updatedAt`` and ``baseline`` the server ``updatedAt`` seen at the last
    successful sync. Missing copies are ``None``.
    """
    if server is None:
        if local is None:
            return SyncDecision(SyncAction.NOOP, "no copy on either side")
        return SyncDecision(SyncAction.PUSH, "server has no copy")
    if local is None:
        return SyncDecision(SyncAction.PULL, "no local copy")

    reference = baseline if baseline is not None else local
    if server > reference:
        if has_local_edits:
            return SyncDecision(SyncAction.SERVER_WINS, "server advanced while local edits were pending")
        return SyncDecision(SyncAction.PULL, "server copy is newer")
    if has_local_edits or local > server:
        return SyncDecision(SyncAction.PUSH, "local copy is ahead")
    return SyncDecision(SyncAction.NOOP, "copies agree")


class ReconciliationEngine:
    """Drives :func:`decide_sync` for tracked sessions and applies the result.

    Only this engine writes server snapshots into the local session store. At
    most one reconciliation runs per session; a second caller awaits the
    running one. Results that land after :meth:`release` or :meth:`close` are
    discarded.
    """

    def __init__(
        self,
        session_store: LocalSessionStore,
        server: ServerStorage,
        online: OnlineStatus,
        poll_seconds: int = 60,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = session_store
        self._server = server
        self._online = online
        self._poll_interval = timedelta(seconds=poll_seconds)
        self._clock = clock
        self._generations = itertools.count(1)
        self._records: dict[str, SyncRecord] = {}
        self._inflight: dict[str, asyncio.Task[SyncOutcome]] = {}
        self._parties: dict[str, dict[str, SessionParty[ServerState]]] = {}
        self._subscribers: list[Callable[[SyncRecord], None]] = []
        self._party_subscribers: list[Callable[[str, dict[str, SessionParty[ServerState]]], None]] = []
        self._applying: str | None = None
        self._unsubscribe_store = session_store.subscribe(self._on_local_change)

    def track(self, session_id: str) -> SyncRecord:
        if puzzle_id_for(session_id) is None:
            raise ValueError(f"not a puzzle session id: {session_id}")
        record = self._records.get(session_id)
        if record is None:
            record = SyncRecord(session_id=session_id, generation=next(self._generations))
            self._records[session_id] = record
        return record

    def release(self, session_id: str) -> None:
        # a running task stays in _inflight until it finishes so a re-tracked session waits for it
        self._records.pop(session_id, None)
        self._parties.pop(session_id, None)

    def close(self) -> None:
        self._unsubscribe_store()
        self._records.clear()
        self._parties.clear()

    def status(self, session_id: str) -> SyncStatus | None:
        record = self._records.get(session_id)
        return record.status if record is not None else None

    def record(self, session_id: str) -> SyncRecord | None:
        return self._records.get(session_id)

    def parties(self, session_id: str) -> dict[str, SessionParty[ServerState]]:
        return dict(self._parties.get(session_id, {}))

    def tracked(self) -> list[str]:
        return list(self._records)

    def subscribe(self, callback: Callable[[SyncRecord], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_parties(
        self, callback: Callable[[str, dict[str, SessionParty[ServerState]]], None]
    ) -> Callable[[], None]:
        self._party_subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._party_subscribers:
                self._party_subscribers.remove(callback)

        return unsubscribe

    def _update(self, session_id: str, **changes: object) -> SyncRecord | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        record = replace(record, **changes)
        self._records[session_id] = record
        for callback in list(self._subscribers):
            callback(record)
        return record

    def _on_local_change(self, puzzle_id: str) -> None:
        session_id = session_id_for(puzzle_id)
        if session_id == self._applying or session_id not in self._records:
            return
        self._update(session_id, has_local_edits=True, status=SyncStatus.LOCAL_ONLY)

    def _is_current(self, session_id: str, generation: int) -> bool:
        record = self._records.get(session_id)
        return record is not None and record.generation == generation

    async def reconcile(self, session_id: str) -> SyncOutcome:
        record = self.track(session_id)
        if not self._online.is_online:
            return SyncOutcome(session_id=session_id, status=record.status, message=OFFLINE_MESSAGE)

        inflight = self._inflight.get(session_id)
        while inflight is not None:
            outcome = await asyncio.shield(inflight)
            if not outcome.discarded or session_id not in self._records:
                return outcome
            # the finished run belonged to an earlier tracking of this session
            if self._inflight.get(session_id) is inflight:
                del self._inflight[session_id]
            inflight = self._inflight.get(session_id)

        record = self._records[session_id]
        task = asyncio.ensure_future(self._run(session_id, record.generation))
        self._inflight[session_id] = task

        def _done(finished: asyncio.Task[SyncOutcome]) -> None:
            if self._inflight.get(session_id) is finished:
                del self._inflight[session_id]

        task.add_done_callback(_done)
        return await asyncio.shield(task)

    def _discarded(self, session_id: str) -> SyncOutcome:
        logger.debug("Discarding reconciliation result for released session %s", session_id)
        return SyncOutcome(session_id=session_id, status=None, discarded=True)

    async def _run(self, session_id: str, generation: int) -> SyncOutcome:
        if not self._is_current(session_id, generation):
            return self._discarded(session_id)
        previous = self._records[session_id].status
        self._update(session_id, status=SyncStatus.SYNCING, last_error=None)
        try:
            return await self._sync(session_id, generation, previous)
        except ServerStorageError as exc:
            logger.error("Reconciliation of %s failed: %s", session_id, exc)
            if not self._is_current(session_id, generation):
                return self._discarded(session_id)
            record = self._update(session_id, status=previous, last_error=FAILED_TO_LOAD_MESSAGE)
            return SyncOutcome(
                session_id=session_id,
                status=record.status if record else previous,
                message=FAILED_TO_LOAD_MESSAGE,
            )
        except Exception:
            if self._is_current(session_id, generation):
                self._update(session_id, status=previous)
            raise

    async def _sync(self, session_id: str, generation: int, previous: SyncStatus) -> SyncOutcome:
        puzzle_id = puzzle_id_for(session_id)
        assert puzzle_id is not None
        server = await self._server.get_session(session_id)
        if not self._is_current(session_id, generation):
            return self._discarded(session_id)

        record = self._records[session_id]
        local = self._store.get(puzzle_id)
        decision = decide_sync(
            local.last_updated if local is not None else None,
            server.updated_at if server is not None else None,
            record.baseline,
            record.has_local_edits,
        )
        logger.debug("Reconciling %s: %s (%s)", session_id, decision.action.value, decision.reason)

        if decision.action == SyncAction.PUSH:
            assert local is not None
            pushed_version = local.version
            server = await self._server.put_session(session_id, shrink_for_server(local.state, local.timer))
            if not self._is_current(session_id, generation):
                return self._discarded(session_id)
            pending = local.version != pushed_version
            status = SyncStatus.LOCAL_ONLY if pending else SyncStatus.SYNCED
            self._update(
                session_id,
                status=status,
                baseline=server.updated_at,
                has_local_edits=pending,
                last_synced_at=self._clock(),
            )
        elif decision.action in (SyncAction.PULL, SyncAction.SERVER_WINS):
            assert server is not None
            status = SyncStatus.SYNCED
            if decision.action == SyncAction.SERVER_WINS:
                self._update(session_id, status=SyncStatus.CONFLICTED)
                logger.info("Server copy of %s wins over pending local edits", session_id)
                status = SyncStatus.STALE_SERVER_WINS
            self._apply(puzzle_id, server)
            self._update(
                session_id,
                status=status,
                baseline=server.updated_at,
                has_local_edits=False,
                last_synced_at=self._clock(),
            )
        elif server is not None:
            self._update(session_id, status=SyncStatus.SYNCED, baseline=server.updated_at, last_synced_at=self._clock())
        else:
            self._update(session_id, status=previous)

        parties = dict(server.parties) if server is not None else {}
        self._publish_parties(session_id, parties)
        return SyncOutcome(
            session_id=session_id,
            status=self._records[session_id].status,
            action=decision.action,
            parties=parties,
        )

    def adopt(self, server: ServerStateResult[ServerState]) -> None:
        """Write a server session fetched outside a reconciliation into the local store.

        The write does not count as a local edit; a tracked record takes the
        session's ``updatedAt`` as its new baseline.
        """
        puzzle_id = puzzle_id_for(server.session_id)
        if puzzle_id is None:
            raise ValueError(f"not a puzzle session id: {server.session_id}")
        self._apply(puzzle_id, server)
        if server.session_id in self._records:
            self._update(
                server.session_id,
                status=SyncStatus.SYNCED,
                baseline=server.updated_at,
                has_local_edits=False,
                last_synced_at=self._clock(),
            )

    def _apply(self, puzzle_id: str, server: ServerStateResult[ServerState]) -> None:
        self._applying = server.session_id
        try:
            self._store.replace_from_server(puzzle_id, server.state, server.updated_at)
        finally:
            self._applying = None

    def _publish_parties(self, session_id: str, parties: dict[str, SessionParty[ServerState]]) -> None:
        self._parties[session_id] = parties
        if not parties:
            return
        for callback in list(self._party_subscribers):
            callback(session_id, parties)

    async def handle_online_change(self, is_online: bool) -> list[SyncOutcome]:
        """Reconcile every tracked session once after coming back online."""
        if not is_online:
            return []
        session_ids = self.tracked()
        if not session_ids:
            return []
        logger.info("Back online, reconciling %d sessions", len(session_ids))
        return list(await asyncio.gather(*(self.reconcile(session_id) for session_id in session_ids)))

    async def poll(self) -> list[SyncOutcome]:
        """Refresh sessions shared with party members once their last sync is older than the poll interval."""
        if not self._online.is_online:
            return []
        now = self._clock()
        due = [
            session_id
            for session_id, record in self._records.items()
            if self._parties.get(session_id)
            and (record.last_synced_at is None or now - record.last_synced_at >= self._poll_interval)
        ]
        if not due:
            return []
        return list(await asyncio.gather(*(self.reconcile(session_id) for session_id in due)))
