from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol

from sqlalchemy.orm import Session

from combattracker.core.engine.errors import NotFoundError
from combattracker.core.engine.state import EffectRecord
from combattracker.core.persistence.state_codec import (
    AttributeEffectsCodec,
    Decoded,
    NotesEffectsCodec,
    markers_from_str,
    markers_to_str,
)
from combattracker.db.models import Subject


class SubjectStore(Protocol):
    """
    Всё, что движку нужно от субъекта (токена/существа).
    Движок субъектами не владеет: только читает/пишет через этот интерфейс.
    """

    def has_subject(self, subject_id: str) -> bool: ...

    def get_effects(self, subject_id: str) -> Decoded[List[EffectRecord]]: ...

    def set_effects(self, subject_id: str, effects: Iterable[EffectRecord]) -> None: ...

    def get_markers(self, subject_id: str) -> set[str]: ...

    def set_markers(self, subject_id: str, markers: Iterable[str]) -> None: ...

    def get_controllers(self, subject_id: str) -> set[str]: ...

    def get_initiative_bonus(self, subject_id: str) -> int: ...


_attribute_codec = AttributeEffectsCodec()
_notes_codec = NotesEffectsCodec()


@dataclass
class SubjectRecord:
    """Строка субъекта для in-memory хранилища (та же форма, что и ORM Subject)."""

    id: str
    name: str = ""
    character_id: Optional[str] = None
    initiative_bonus: int = 0
    controlled_by: str = ""
    markers: str = ""
    combat_data: Optional[str] = None
    gm_notes: str = ""


def _read_effects(row) -> Decoded[List[EffectRecord]]:
    # связанный субъект -> отдельный атрибут, иначе -> скрытый блок в заметках
    if row.character_id:
        return _attribute_codec.decode(row.combat_data)
    return _notes_codec.decode(row.gm_notes)


def _write_effects(row, effects: Iterable[EffectRecord]) -> None:
    if row.character_id:
        row.combat_data = _attribute_codec.encode(effects)
    else:
        row.gm_notes = _notes_codec.encode(row.gm_notes, effects)


class InMemorySubjectStore:
    def __init__(self) -> None:
        self.rows: Dict[str, SubjectRecord] = {}

    def add_subject(
        self,
        subject_id: str,
        *,
        name: str = "",
        linked: bool = True,
        markers: Iterable[str] = (),
        controllers: Iterable[str] = (),
        effects: Iterable[EffectRecord] = (),
        initiative_bonus: int = 0,
        gm_notes: str = "",
    ) -> SubjectRecord:
        row = SubjectRecord(
            id=subject_id,
            name=name or subject_id,
            character_id=f"char-{subject_id}" if linked else None,
            initiative_bonus=initiative_bonus,
            controlled_by=",".join(controllers),
            markers=markers_to_str(markers),
            gm_notes=gm_notes,
        )
        _write_effects(row, list(effects))
        self.rows[subject_id] = row
        return row

    def _row(self, subject_id: str) -> SubjectRecord:
        row = self.rows.get(subject_id)
        if row is None:
            raise NotFoundError(f"subject {subject_id!r} not found", subject_id=subject_id)
        return row

    def has_subject(self, subject_id: str) -> bool:
        return subject_id in self.rows

    def get_effects(self, subject_id: str) -> Decoded[List[EffectRecord]]:
        return _read_effects(self._row(subject_id))

    def set_effects(self, subject_id: str, effects: Iterable[EffectRecord]) -> None:
        _write_effects(self._row(subject_id), list(effects))

    def get_markers(self, subject_id: str) -> set[str]:
        return markers_from_str(self._row(subject_id).markers)

    def set_markers(self, subject_id: str, markers: Iterable[str]) -> None:
        self._row(subject_id).markers = markers_to_str(markers)

    def get_controllers(self, subject_id: str) -> set[str]:
        return markers_from_str(self._row(subject_id).controlled_by)

    def get_initiative_bonus(self, subject_id: str) -> int:
        return int(self._row(subject_id).initiative_bonus or 0)


@dataclass
class SqlSubjectStore:
    db: Session
    session_id: str
    _cache: Dict[str, Subject] = field(default_factory=dict)

    def _find(self, subject_id: str) -> Optional[Subject]:
        row = self._cache.get(subject_id)
        if row is not None:
            return row
        row = (
            self.db.query(Subject)
            .filter(Subject.id == subject_id, Subject.session_id == self.session_id)
            .first()
        )
        if row is not None:
            self._cache[subject_id] = row
        return row

    def _row(self, subject_id: str) -> Subject:
        row = self._find(subject_id)
        if row is None:
            raise NotFoundError(f"subject {subject_id!r} not found", subject_id=subject_id)
        return row

    def has_subject(self, subject_id: str) -> bool:
        return self._find(subject_id) is not None

    def get_effects(self, subject_id: str) -> Decoded[List[EffectRecord]]:
        return _read_effects(self._row(subject_id))

    def set_effects(self, subject_id: str, effects: Iterable[EffectRecord]) -> None:
        _write_effects(self._row(subject_id), list(effects))
        self.db.flush()

    def get_markers(self, subject_id: str) -> set[str]:
        return markers_from_str(self._row(subject_id).markers)

    def set_markers(self, subject_id: str, markers: Iterable[str]) -> None:
        self._row(subject_id).markers = markers_to_str(markers)
        self.db.flush()

    def get_controllers(self, subject_id: str) -> set[str]:
        return markers_from_str(self._row(subject_id).controlled_by)

    def get_initiative_bonus(self, subject_id: str) -> int:
        return int(self._row(subject_id).initiative_bonus or 0)
