from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from combattracker.core.engine.effects import LibraryLookup, load_effects
from combattracker.core.engine.state import EffectLibraryEntry, EffectRecord
from combattracker.core.persistence.subject_store import SubjectStore

logger = logging.getLogger(__name__)


class IconLookup(LibraryLookup, Protocol):
    def find_by_icon(self, icon: str) -> Optional[tuple[str, EffectLibraryEntry]]: ...


@dataclass(frozen=True)
class SyncResult:
    removed: int = 0
    markers_added: int = 0
    added: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.markers_added or self.added)


def effect_from_marker(template: EffectLibraryEntry) -> EffectRecord:
    """
    Эффект, восстановленный по голому маркеру.
    direction = -1, только если в шаблоне поля нет вообще (явный null сохраняется);
    autochange = "turn", если в шаблоне пусто.
    """
    update: dict = {}
    if "direction" not in template.model_fields_set:
        update["direction"] = -1
    if not template.autochange:
        update["autochange"] = "turn"
    return template.instantiate(**update)


def _synthesize(
    library: IconLookup,
    effects: List[EffectRecord],
    markers: Iterable[str],
) -> int:
    icons = {e.icon for e in effects if e.icon}
    names = {e.name.casefold() for e in effects}
    added = 0
    for marker in markers:
        if marker in icons:
            continue
        found = library.find_by_icon(marker)
        if found is None:
            continue
        _, template = found
        # имя уже занято эффектом с другой иконкой: его не трогаем
        if template.name.casefold() in names:
            continue
        effects.append(effect_from_marker(template))
        icons.add(marker)
        names.add(template.name.casefold())
        added += 1
    return added


def sync_markers(store: SubjectStore, library: IconLookup, subject_id: str) -> SyncResult:
    effects = load_effects(store, subject_id)
    markers = store.get_markers(subject_id)

    # 1. эффекты, чей маркер сняли снаружи -> удаляем (маркер уже снят, его не трогаем)
    kept = [e for e in effects if not (e.icon and e.icon not in markers)]
    removed = len(effects) - len(kept)

    # 2. у оставшихся эффектов маркер должен быть на субъекте
    new_markers = set(markers)
    markers_added = 0
    for e in kept:
        if e.icon and e.icon not in new_markers:
            new_markers.add(e.icon)
            markers_added += 1

    # 3. маркеры без эффекта -> эффект из библиотеки по иконке
    added = _synthesize(library, kept, sorted(markers))

    if removed or added:
        store.set_effects(subject_id, kept)
    if markers_added:
        store.set_markers(subject_id, new_markers)

    result = SyncResult(removed=removed, markers_added=markers_added, added=added)
    if result.changed:
        logger.debug("markers synced on %s: %s", subject_id, result)
    return result


def on_markers_changed(
    store: SubjectStore,
    library: IconLookup,
    subject_id: str,
    previous: Iterable[str],
    current: Iterable[str],
) -> SyncResult:
    """Инкрементальная версия sync: смотрим только на разницу old/new маркеров."""
    prev_set = {m for m in previous if m}
    cur_set = {m for m in current if m}
    dropped = prev_set - cur_set
    appeared = sorted(cur_set - prev_set)

    effects = load_effects(store, subject_id)

    kept = [e for e in effects if not (e.icon and e.icon in dropped)]
    removed = len(effects) - len(kept)
    added = _synthesize(library, kept, appeared) if appeared else 0

    if removed or added:
        store.set_effects(subject_id, kept)

    return SyncResult(removed=removed, added=added)
