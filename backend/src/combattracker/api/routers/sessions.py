from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from combattracker.api.deps import build_context, get_registry, get_session_or_404
from combattracker.api.schemas import (
    ApplyCommandRequest,
    ApplyCommandResponse,
    SessionCreate,
    SessionOut,
    SessionStateResponse,
)
from combattracker.core.engine.commands import Command
from combattracker.core.engine.rules.apply import apply_command as engine_apply
from combattracker.core.engine.session import SessionRegistry
from combattracker.core.engine.state import TurnOrderState, entry_display_name
from combattracker.core.persistence.runtime_store import SqlOrderStore, load_state
from combattracker.core.persistence.state_codec import entry_to_dict
from combattracker.db.deps import get_db
from combattracker.db.models import CombatSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

_command_adapter = TypeAdapter(Command)


def _session_out(obj: CombatSession) -> SessionOut:
    return SessionOut(
        id=obj.id,
        name=obj.name,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


def _state_dict(session_id: str, state: TurnOrderState) -> dict:
    head = state.head
    return {
        "session_id": session_id,
        "round": state.round,
        "seq": state.seq,
        "active_id": entry_display_name(head) if head is not None else None,
        "order": [entry_to_dict(e) for e in state.order],
    }


@router.get("", response_model=list[SessionOut])
def list_sessions(db: Session = Depends(get_db)):
    items = db.query(CombatSession).order_by(CombatSession.created_at.desc()).all()
    return [_session_out(s) for s in items]


@router.post("", response_model=SessionOut)
def create_session(payload: SessionCreate, db: Session = Depends(get_db)):
    obj = CombatSession(name=payload.name)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    logger.info("session %s created", obj.id)
    return _session_out(obj)


@router.get("/{session_id}", response_model=SessionOut)
def get_session(session_id: str, db: Session = Depends(get_db)):
    return _session_out(get_session_or_404(db, session_id))


@router.delete("/{session_id}")
def delete_session(
    session_id: str,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    obj = get_session_or_404(db, session_id)
    with registry.lock(session_id):
        db.delete(obj)
        db.commit()
    registry.forget(session_id)
    return {"deleted": True}


@router.get("/{session_id}/state", response_model=SessionStateResponse)
def get_state(session_id: str, db: Session = Depends(get_db)):
    get_session_or_404(db, session_id)
    state = load_state(SqlOrderStore(db, session_id))
    return SessionStateResponse(**_state_dict(session_id, state))


@router.post("/{session_id}/commands:apply", response_model=ApplyCommandResponse)
def apply_command(
    session_id: str,
    req: ApplyCommandRequest,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    get_session_or_404(db, session_id)

    try:
        cmd_obj = _command_adapter.validate_python(req.command)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid command: {e}")

    # одна сессия = один писатель
    with registry.lock(session_id):
        ctx = build_context(db, registry, session_id)
        state, events_delta = engine_apply(ctx, cmd_obj, req.actor.to_actor())

        rejected = bool(events_delta) and events_delta[0]["type"] == "CommandRejected"
        if rejected:
            db.rollback()
        else:
            db.commit()

    return ApplyCommandResponse(
        **_state_dict(session_id, state), events_delta=events_delta
    )
