"""FastAPI endpoints for session storage, parties, the puzzle book and the friends leaderboard."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from .config import load_settings
from .leaderboard import build_leaderboard, username_resolver
from .models import PartyInvariantError, PartySettings, ServerState, active_roster, parse_timestamp
from .store import SessionRecordStore, create_store

logger = logging.getLogger(__name__)


class PatchSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    state: dict[str, Any]
    expires_at: datetime | None = Field(default=None, alias="expiresAt")


class PartySettingsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_members: int | None = Field(default=None, ge=1, alias="maxMembers")
    is_public: bool = Field(default=False, alias="isPublic")
    invitation_required: bool = Field(default=True, alias="invitationRequired")


class CreatePartyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=200)
    member_nickname: str = Field(min_length=1, max_length=100, alias="memberNickname")
    description: str | None = Field(default=None, max_length=1000)
    settings: PartySettingsPayload | None = None


class JoinPartyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_nickname: str = Field(min_length=1, max_length=100, alias="memberNickname")


def _default_store() -> SessionRecordStore:
    settings = load_settings()
    return create_store(settings.database_url, retention_days=settings.session_retention_days)


def get_user_id(x_user_id: str = Header(min_length=1)) -> str:
    return x_user_id


def create_app(store: SessionRecordStore | None = None) -> FastAPI:
    app = FastAPI(title="Sudoku Race API", version="0.1.0")
    session_store = store if store is not None else _default_store()

    def get_store() -> SessionRecordStore:
        return session_store

    @app.get("/api/sessions/{session_id}")
    def get_session(
        session_id: str,
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> dict[str, Any]:
        session = local_store.get_session(user_id=user_id, session_id=session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session.to_dict()

    @app.patch("/api/sessions/{session_id}")
    def patch_session(
        session_id: str,
        payload: PatchSessionRequest,
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> dict[str, Any]:
        try:
            state = ServerState.from_dict(payload.state)
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=f"Malformed session state: {exc}") from exc
        saved = local_store.save_session(
            user_id=user_id,
            session_id=session_id,
            state=state,
            expires_at=parse_timestamp(payload.expires_at),
        )
        logger.debug("Stored session %s for %s", session_id, user_id)
        return saved.to_dict()

    @app.get("/api/sessions")
    def list_sessions(
        party_id: str | None = Query(default=None, alias="partyId"),
        member_id: str | None = Query(default=None, alias="userId"),
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> list[dict[str, Any]]:
        sessions = local_store.list_sessions(user_id=user_id, party_id=party_id, member_id=member_id)
        if sessions is None:
            raise HTTPException(status_code=403, detail="Sessions are not shared with you")
        return [session.to_dict() for session in sessions]

    @app.get("/api/books/current")
    def get_current_book(local_store: SessionRecordStore = Depends(get_store)) -> dict[str, Any]:
        book = local_store.get_book_of_the_month()
        if book is None:
            raise HTTPException(status_code=404, detail="No book of the month")
        return book.to_dict()

    @app.get("/api/parties")
    def list_parties(
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> list[dict[str, Any]]:
        return [record.to_dict() for record in local_store.list_parties(user_id=user_id)]

    @app.post("/api/parties")
    def create_party(
        payload: CreatePartyRequest,
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> dict[str, Any]:
        settings = None
        if payload.settings is not None:
            settings = PartySettings(
                is_public=payload.settings.is_public,
                invitation_required=payload.settings.invitation_required,
                max_members=payload.settings.max_members,
            )
        try:
            record = local_store.create_party(
                user_id=user_id,
                name=payload.name,
                member_nickname=payload.member_nickname,
                description=payload.description,
                settings=settings,
            )
        except PartyInvariantError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("User %s created party %s", user_id, record.party.party_id)
        return record.to_dict()

    @app.post("/api/parties/{party_id}/members")
    def join_party(
        party_id: str,
        payload: JoinPartyRequest,
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> dict[str, Any]:
        try:
            record = local_store.join_party(party_id=party_id, user_id=user_id, member_nickname=payload.member_nickname)
        except PartyInvariantError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if record is None:
            raise HTTPException(status_code=404, detail="Party not found")
        return record.to_dict()

    @app.delete("/api/parties/{party_id}/members/me")
    def leave_party(
        party_id: str,
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> dict[str, Any]:
        try:
            record = local_store.leave_party(party_id=party_id, user_id=user_id)
        except PartyInvariantError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if record is None:
            raise HTTPException(status_code=404, detail="Party membership not found")
        return record.to_dict()

    @app.get("/api/parties/{party_id}/leaderboard")
    def get_leaderboard(
        party_id: str,
        user_id: str = Depends(get_user_id),
        local_store: SessionRecordStore = Depends(get_store),
    ) -> dict[str, Any]:
        record = local_store.get_party(party_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Party not found")
        if not record.is_active_member(user_id):
            raise HTTPException(status_code=403, detail="Not a member of this party")

        roster = [member.user_id for member in active_roster(record.members)]
        all_sessions = {}
        for member_id in roster:
            sessions = local_store.list_sessions(user_id=user_id, party_id=party_id, member_id=member_id)
            all_sessions[member_id] = sessions or []
        entries = build_leaderboard(all_sessions, username_resolver([record]), roster=roster)
        return {"partyId": party_id, "entries": [entry.to_dict() for entry in entries]}

    return app


app = create_app()
