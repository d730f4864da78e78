from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from combattracker.api.deps import build_context, get_registry, get_session_or_404
from combattracker.api.schemas import MarkersUpdate, SubjectCreate, SubjectOut
from combattracker.core.engine.effects import require_control, visible_effects
from combattracker.core.engine.errors import PermissionDeniedError
from combattracker.core.engine.markers import on_markers_changed
from combattracker.core.engine.session import SessionRegistry
from combattracker.core.engine.state import Actor
from combattracker.core.persistence.subject_store import SqlSubjectStore
from combattracker.core.persistence.state_codec import markers_from_str, markers_to_str
from combattracker.db.deps import get_db
from combattracker.db.models import Subject

router = APIRouter(prefix="/sessions/{session_id}/subjects", tags=["subjects"])


def _subject_out(row: Subject, store: SqlSubjectStore, actor: Actor) -> SubjectOut:
    effects = store.get_effects(row.id).value
    return SubjectOut(
        id=row.id,
        session_id=row.session_id,
        name=row.name,
        character_id=row.character_id,
        initiative_bonus=row.initiative_bonus,
        controlled_by=sorted(markers_from_str(row.controlled_by)),
        markers=sorted(markers_from_str(row.markers)),
        effects=visible_effects(effects, actor),
    )


def _get_subject_or_404(db: Session, session_id: str, subject_id: str) -> Subject:
    row = (
        db.query(Subject)
        .filter(Subject.id == subject_id, Subject.session_id == session_id)
        .first()
    )
    if not row:
        raise HTTPException(status_code=404, detail="Subject not found")
    return row


@router.get("", response_model=list[SubjectOut])
def list_subjects(
    session_id: str,
    player_id: str = "gm",
    is_gm: bool = True,
    db: Session = Depends(get_db),
):
    get_session_or_404(db, session_id)
    store = SqlSubjectStore(db, session_id)
    actor = Actor(player_id=player_id, is_gm=is_gm)
    rows = db.query(Subject).filter(Subject.session_id == session_id).all()
    return [_subject_out(r, store, actor) for r in rows]


@router.post("", response_model=SubjectOut)
def create_subject(
    session_id: str, payload: SubjectCreate, db: Session = Depends(get_db)
):
    get_session_or_404(db, session_id)
    row = Subject(
        session_id=session_id,
        name=payload.name,
        character_id=payload.character_id,
        initiative_bonus=payload.initiative_bonus,
        controlled_by=",".join(payload.controlled_by),
        markers=markers_to_str(payload.markers),
        gm_notes=payload.gm_notes,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return _subject_out(row, SqlSubjectStore(db, session_id), Actor("gm", is_gm=True))


@router.get("/{subject_id}", response_model=SubjectOut)
def get_subject(
    session_id: str,
    subject_id: str,
    player_id: str = "gm",
    is_gm: bool = True,
    db: Session = Depends(get_db),
):
    get_session_or_404(db, session_id)
    row = _get_subject_or_404(db, session_id, subject_id)
    actor = Actor(player_id=player_id, is_gm=is_gm)
    return _subject_out(row, SqlSubjectStore(db, session_id), actor)


@router.put("/{subject_id}/markers", response_model=SubjectOut)
def update_markers(
    session_id: str,
    subject_id: str,
    payload: MarkersUpdate,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    """Хост сообщил, что набор маркеров поменялся: подтягиваем эффекты за ним."""
    get_session_or_404(db, session_id)
    _get_subject_or_404(db, session_id, subject_id)
    actor = payload.actor.to_actor()

    with registry.lock(session_id):
        ctx = build_context(db, registry, session_id)
        store = ctx.subjects
        try:
            require_control(store, actor, subject_id)
        except PermissionDeniedError as e:
            raise HTTPException(status_code=403, detail=e.message)

        previous = store.get_markers(subject_id)
        store.set_markers(subject_id, payload.markers)
        on_markers_changed(store, ctx.library, subject_id, previous, payload.markers)
        db.commit()

    row = _get_subject_or_404(db, session_id, subject_id)
    return _subject_out(row, SqlSubjectStore(db, session_id), actor)
