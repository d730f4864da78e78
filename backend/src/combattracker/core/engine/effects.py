from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from combattracker.core.engine.errors import NotFoundError, PermissionDeniedError
from combattracker.core.engine.state import (
    Actor,
    Autochange,
    EffectKind,
    EffectLibraryEntry,
    EffectRecord,
    Trigger,
    Visibility,
    positive_or_none,
)
from combattracker.core.persistence.subject_store import SubjectStore

logger = logging.getLogger(__name__)


class LibraryLookup(Protocol):
    def get(self, key: str) -> Optional[EffectLibraryEntry]: ...


class EffectOverrides(BaseModel):
    """Поля, которыми можно перебить шаблон при добавлении эффекта."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1)
    kind: Optional[EffectKind] = Field(default=None, alias="type")
    icon: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = None
    counter: Optional[int] = Field(default=None, gt=0)
    direction: Optional[Literal[-1, 1]] = None
    autochange: Optional[Autochange] = None
    visibility: Optional[Visibility] = None

    @field_validator("duration")
    @classmethod
    def _positive_duration(cls, v: Optional[int]) -> Optional[int]:
        return positive_or_none(v)

    def as_update(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, by_alias=False)


@dataclass
class TickResult:
    subject_id: str
    trigger: str
    ticked: List[EffectRecord] = field(default_factory=list)
    expired: List[EffectRecord] = field(default_factory=list)


def _require_subject(store: SubjectStore, subject_id: str) -> None:
    if not store.has_subject(subject_id):
        raise NotFoundError(f"subject {subject_id!r} not found", subject_id=subject_id)


def load_effects(store: SubjectStore, subject_id: str) -> List[EffectRecord]:
    _require_subject(store, subject_id)
    return list(store.get_effects(subject_id).value)


def find_effect(effects: Iterable[EffectRecord], name: str) -> Optional[EffectRecord]:
    for e in effects:
        if e.same_name(name):
            return e
    return None


def _index_of(effects: List[EffectRecord], name: str) -> int:
    for i, e in enumerate(effects):
        if e.same_name(name):
            return i
    return -1


def _ensure_marker(store: SubjectStore, subject_id: str, icon: Optional[str]) -> bool:
    if not icon:
        return False
    markers = store.get_markers(subject_id)
    if icon in markers:
        return False
    markers.add(icon)
    store.set_markers(subject_id, markers)
    return True


def _drop_markers(store: SubjectStore, subject_id: str, icons: Iterable[Optional[str]]) -> None:
    # снимаем только маркеры удалённых эффектов, остальные не трогаем
    to_drop = {i for i in icons if i}
    if not to_drop:
        return
    markers = store.get_markers(subject_id)
    remaining = markers - to_drop
    if remaining != markers:
        store.set_markers(subject_id, remaining)


def build_effect(
    library: LibraryLookup, key: str, overrides: Optional[EffectOverrides] = None
) -> tuple[EffectRecord, bool]:
    """(эффект, из_библиотеки). Нет ключа в библиотеке -> свободный reminder."""
    upd = overrides.as_update() if overrides is not None else {}

    template = library.get(key)
    if template is not None:
        return template.instantiate(**upd), True

    data: dict[str, Any] = {
        "name": key.strip(),
        "kind": "reminder",
        "icon": None,
        "description": None,
        "duration": None,
        "direction": None,
        "autochange": None,
    }
    data.update({k: v for k, v in upd.items() if v is not None})
    if "counter" not in upd:
        data["counter"] = data["duration"]
    return EffectRecord.model_validate(data), False


def put_effect(store: SubjectStore, subject_id: str, effect: EffectRecord) -> bool:
    """Кладёт эффект; одноимённый (без учёта регистра) заменяется на месте. True = была замена."""
    effects = load_effects(store, subject_id)

    idx = _index_of(effects, effect.name)
    replaced = idx >= 0
    if replaced:
        effects[idx] = effect
    else:
        effects.append(effect)

    store.set_effects(subject_id, effects)
    _ensure_marker(store, subject_id, effect.icon)
    return replaced


def add_effect(
    store: SubjectStore,
    library: LibraryLookup,
    subject_id: str,
    key: str,
    overrides: Optional[EffectOverrides] = None,
) -> EffectRecord:
    _require_subject(store, subject_id)
    effect, from_library = build_effect(library, key, overrides)
    replaced = put_effect(store, subject_id, effect)
    logger.debug(
        "effect %s %s on %s (library=%s)",
        effect.name,
        "replaced" if replaced else "added",
        subject_id,
        from_library,
    )
    return effect


def add_reminder(
    store: SubjectStore, subject_id: str, title: str, description: Optional[str] = None
) -> EffectRecord:
    effect = EffectRecord(
        name=title.strip(),
        kind="reminder",
        description=(description or "").strip() or None,
    )
    put_effect(store, subject_id, effect)
    return effect


def remove_effects(
    store: SubjectStore,
    subject_id: str,
    names: Iterable[str],
) -> List[EffectRecord]:
    """Общий путь удаления (ручное снятие, истечение, sync)."""
    effects = load_effects(store, subject_id)

    removed: List[EffectRecord] = []
    for name in names:
        idx = _index_of(effects, name)
        if idx >= 0:
            removed.append(effects.pop(idx))

    if not removed:
        return removed

    store.set_effects(subject_id, effects)
    _drop_markers(store, subject_id, (e.icon for e in removed))
    return removed


def remove_effect(store: SubjectStore, subject_id: str, name: str) -> bool:
    return bool(remove_effects(store, subject_id, [name]))


def tick_effects(store: SubjectStore, subject_id: str, trigger: Trigger) -> TickResult:
    """
    Один тик: counter += direction для всех эффектов с autochange == trigger.
    Всё или ничего: неизвестный субъект -> NotFoundError, ничего не пишем.
    Истёкшие (counter <= 0) выкидываются ДО записи, так что 0/минус в хранилище не попадают.
    """
    effects = load_effects(store, subject_id)
    result = TickResult(subject_id=subject_id, trigger=trigger)

    survivors: List[EffectRecord] = []
    for e in effects:
        if not e.ticks_on(trigger):
            survivors.append(e)
            continue

        ticked = e.model_copy(update={"counter": e.counter + e.direction})  # type: ignore[operator]
        if ticked.counter <= 0:  # type: ignore[operator]
            result.expired.append(ticked)
        else:
            result.ticked.append(ticked)
            survivors.append(ticked)

    if not result.ticked and not result.expired:
        return result

    store.set_effects(subject_id, survivors)
    _drop_markers(store, subject_id, (e.icon for e in result.expired))

    logger.debug(
        "tick %s on %s: %d ticked, %d expired",
        trigger,
        subject_id,
        len(result.ticked),
        len(result.expired),
    )
    return result


def edit_effect(
    store: SubjectStore,
    subject_id: str,
    name: str,
    duration: Optional[int],
    autochange: Optional[str],
) -> Optional[EffectRecord]:
    """Новая длительность перезапускает счётчик; направление всегда вниз."""
    effects = load_effects(store, subject_id)
    idx = _index_of(effects, name)
    if idx < 0:
        return None

    dur = positive_or_none(duration)
    updated = effects[idx].model_copy(
        update={
            "duration": dur,
            "counter": dur,
            "direction": -1 if dur is not None else None,
            "autochange": autochange if autochange in ("turn", "round") else None,
        }
    )
    effects[idx] = updated
    store.set_effects(subject_id, effects)
    return updated


def clear_effects(store: SubjectStore, subject_id: str) -> int:
    effects = load_effects(store, subject_id)
    store.set_effects(subject_id, [])
    store.set_markers(subject_id, set())
    return len(effects)


def visible_effects(effects: Iterable[EffectRecord], actor: Actor) -> List[EffectRecord]:
    if actor.is_gm:
        return list(effects)
    return [e for e in effects if not e.is_hidden]


def can_control(store: SubjectStore, actor: Actor, subject_id: str) -> bool:
    if actor.is_gm:
        return True
    controllers = store.get_controllers(subject_id)
    return actor.player_id in controllers or "all" in controllers


def require_control(store: SubjectStore, actor: Actor, subject_id: str) -> None:
    if not can_control(store, actor, subject_id):
        raise PermissionDeniedError(
            f"{actor.player_id!r} does not control subject {subject_id!r}",
            subject_id=subject_id,
            player_id=actor.player_id,
        )
