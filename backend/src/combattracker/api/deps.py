from __future__ import annotations

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from combattracker.core.engine.session import SessionContext, SessionRegistry
from combattracker.core.persistence.runtime_store import SqlLibraryStore, SqlOrderStore
from combattracker.core.persistence.subject_store import SqlSubjectStore
from combattracker.db.models import CombatSession


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_session_or_404(db: Session, session_id: str) -> CombatSession:
    obj = db.get(CombatSession, session_id)
    if not obj:
        raise HTTPException(status_code=404, detail="Session not found")
    return obj


def build_context(
    db: Session, registry: SessionRegistry, session_id: str
) -> SessionContext:
    return registry.context(
        session_id,
        subjects=SqlSubjectStore(db, session_id),
        orders=SqlOrderStore(db, session_id),
        library_store=SqlLibraryStore(db, session_id),
    )
