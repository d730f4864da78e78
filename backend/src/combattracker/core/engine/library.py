from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict

from combattracker.core.engine.errors import InvalidFormat, NotFoundError
from combattracker.core.engine.state import EFFECT_KINDS, EffectLibraryEntry, positive_or_none
from combattracker.core.persistence.state_codec import (
    Decoded,
    library_from_data,
    library_to_json,
)

logger = logging.getLogger(__name__)

Library = Dict[str, EffectLibraryEntry]


# Базовые 5e состояния/эффекты с дефолтными маркерами.
#   duration: None = висит всегда
#   direction: -1 вниз, 1 вверх, None = не меняется
#   autochange: "turn" | "round" | None
DEFAULT_EFFECT_LIBRARY: Dict[str, Dict[str, Any]] = {
    "blinded": {
        "name": "Blinded",
        "type": "condition",
        "icon": "bleeding-eye",
        "description": "Cannot see. Auto-fails sight checks. Attacks against have advantage, attacks by have disadvantage.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "charmed": {
        "name": "Charmed",
        "type": "spell",
        "icon": "broken-heart",
        "description": "Can't attack the charmer. Charmer has advantage on social checks.",
        "duration": 10,
        "direction": -1,
        "autochange": "round",
    },
    "concentration": {
        "name": "Concentration",
        "type": "spell",
        "icon": "trophy",
        "description": "Maintaining a spell. Taking damage requires CON save to maintain.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "deafened": {
        "name": "Deafened",
        "type": "condition",
        "icon": "edge-crack",
        "description": "Cannot hear. Auto-fails hearing checks.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "frightened": {
        "name": "Frightened",
        "type": "condition",
        "icon": "screaming",
        "description": "Disadvantage on checks/attacks while source in sight. Can't move closer to source.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "grappled": {
        "name": "Grappled",
        "type": "condition",
        "icon": "grab",
        "description": "Speed is 0. Ends if grappler is incapacitated or effect moves you out of reach.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "incapacitated": {
        "name": "Incapacitated",
        "type": "condition",
        "icon": "interdiction",
        "description": "Cannot take actions or reactions.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "invisibility": {
        "name": "Invisibility",
        "type": "spell",
        "icon": "ninja-mask",
        "description": "Impossible to see. Attacks against have disadvantage, attacks by have advantage.",
        "duration": 10,
        "direction": -1,
        "autochange": "round",
    },
    "paralyzed": {
        "name": "Paralyzed",
        "type": "condition",
        "icon": "pummeled",
        "description": "Incapacitated, can't move or speak. Auto-fails STR/DEX saves. Attacks have advantage, hits within 5ft are crits.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "petrified": {
        "name": "Petrified",
        "type": "condition",
        "icon": "frozen-orb",
        "description": "Transformed to stone. Incapacitated, unaware. Resistance to all damage. Immune to poison/disease.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "poisoned": {
        "name": "Poisoned",
        "type": "condition",
        "icon": "chemical-bolt",
        "description": "Disadvantage on attack rolls and ability checks.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "prone": {
        "name": "Prone",
        "type": "condition",
        "icon": "back-pain",
        "description": "Can only crawl. Disadvantage on attacks. Attacks within 5ft have advantage, beyond have disadvantage.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "restrained": {
        "name": "Restrained",
        "type": "condition",
        "icon": "fishing-net",
        "description": "Speed is 0. Attacks against have advantage, attacks by have disadvantage. Disadvantage on DEX saves.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "stunned": {
        "name": "Stunned",
        "type": "condition",
        "icon": "fist",
        "description": "Incapacitated, can't move, speaks falteringly. Auto-fails STR/DEX saves. Attacks have advantage.",
        "duration": 1,
        "direction": -1,
        "autochange": "turn",
    },
    "unconscious": {
        "name": "Unconscious",
        "type": "condition",
        "icon": "sleepy",
        "description": "Incapacitated, can't move/speak, unaware. Drops items, falls prone. Auto-fails STR/DEX saves. Attacks have advantage, hits within 5ft are crits.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "rage": {
        "name": "Rage",
        "type": "trait",
        "icon": "strong",
        "description": "Advantage on STR checks/saves. Bonus rage damage on melee. Resistance to bludgeoning, piercing, slashing.",
        "duration": 10,
        "direction": -1,
        "autochange": "round",
    },
    "reckless": {
        "name": "Reckless Attack",
        "type": "trait",
        "icon": "overdrive",
        "description": "Advantage on melee attacks this turn. Attacks against you have advantage until next turn.",
        "duration": 1,
        "direction": -1,
        "autochange": "turn",
    },
    "defensive": {
        "name": "Defensive Stance",
        "type": "trait",
        "icon": "white-tower",
        "description": "+2 AC. Movement speed reduced by half.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
    "dodge": {
        "name": "Dodging",
        "type": "trait",
        "icon": "flying-flag",
        "description": "Attacks against have disadvantage. Advantage on DEX saves.",
        "duration": 1,
        "direction": -1,
        "autochange": "turn",
    },
    "hiding": {
        "name": "Hiding",
        "type": "trait",
        "icon": "ninja-mask",
        "description": "Cannot be seen. Attacks have advantage. Revealed if you attack or make noise.",
        "duration": None,
        "direction": None,
        "autochange": None,
    },
}


def builtin_library() -> Library:
    """Свежая копия встроенной библиотеки (сами дефолты никогда не мутируются)."""
    return {
        key: EffectLibraryEntry.model_validate(copy.deepcopy(raw))
        for key, raw in DEFAULT_EFFECT_LIBRARY.items()
    }


def _copy_library(lib: Library) -> Library:
    return {k: v.model_copy(deep=True) for k, v in lib.items()}


class LibraryStore(Protocol):
    def load_catalog(self) -> Decoded[Optional[Library]]: ...

    def save_catalog(self, catalog: Optional[Library]) -> None: ...


@dataclass
class LibraryOverride:
    """Сессионная (эфемерная) подмена библиотеки. Живёт только в памяти процесса."""

    catalog: Optional[Library] = None

    def clear(self) -> None:
        self.catalog = None


class LibraryEntryPatch(BaseModel):
    """
    Правка одного поля/нескольких полей шаблона.
    Применяются только реально переданные поля (model_fields_set).
    """

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    kind: Optional[str] = None
    icon: Optional[str] = None
    duration: Optional[Any] = None
    direction: Optional[Any] = None
    autochange: Optional[str] = None
    visibility: Optional[str] = None


def _coerce_int(v: Any) -> Optional[int]:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def patch_entry(entry: EffectLibraryEntry, patch: LibraryEntryPatch) -> EffectLibraryEntry:
    fields = patch.model_fields_set
    upd: dict[str, Any] = {}

    if "description" in fields:
        upd["description"] = patch.description or None
    if "kind" in fields and patch.kind in EFFECT_KINDS:
        upd["kind"] = patch.kind
    if "icon" in fields:
        icon = (patch.icon or "").strip()
        upd["icon"] = None if icon in ("", "none") else icon
    if "duration" in fields:
        upd["duration"] = positive_or_none(_coerce_int(patch.duration))
    if "direction" in fields:
        d = _coerce_int(patch.direction)
        upd["direction"] = d if d in (-1, 1) else None
    if "autochange" in fields:
        upd["autochange"] = (
            patch.autochange if patch.autochange in ("turn", "round", "manual") else None
        )
    if "visibility" in fields:
        upd["visibility"] = "hide" if patch.visibility == "hide" else "show"

    return entry.model_copy(update=upd)


class EffectLibraryResolver:
    """
    Порядок: сессионный override -> сохранённый кастомный каталог -> встроенные дефолты.
    Кастомный каталог создаётся лениво (copy-on-write) при первой правке.
    """

    def __init__(self, store: LibraryStore, override: LibraryOverride) -> None:
        self.store = store
        self.override = override

    def resolve(self) -> Library:
        if self.override.catalog:
            return self.override.catalog

        persisted = self.store.load_catalog()
        if persisted.value is not None:
            return persisted.value

        return builtin_library()

    def get(self, key: str) -> Optional[EffectLibraryEntry]:
        return self.resolve().get(key.strip().lower())

    def find_by_icon(self, icon: str) -> Optional[Tuple[str, EffectLibraryEntry]]:
        for key, entry in self.resolve().items():
            if entry.icon == icon:
                return key, entry
        return None

    def _writable_catalog(self) -> Library:
        persisted = self.store.load_catalog().value
        if persisted is None:
            logger.info("creating custom effect library from built-ins")
            return builtin_library()
        return persisted

    def configure(self, key: str, patch: LibraryEntryPatch) -> EffectLibraryEntry:
        key = key.strip().lower()
        catalog = self._writable_catalog()

        entry = catalog.get(key)
        if entry is None:
            raise NotFoundError(f"library entry {key!r} not found", key=key)

        updated = patch_entry(entry, patch)
        catalog[key] = updated
        self.store.save_catalog(catalog)

        if self.override.catalog and key in self.override.catalog:
            self.override.catalog[key] = patch_entry(self.override.catalog[key], patch)

        logger.info("library entry %s configured: %s", key, sorted(patch.model_fields_set))
        return updated

    def purge(self, key: str) -> bool:
        # встроенные не удаляются навсегда: после reset() вернутся
        key = key.strip().lower()
        catalog = self._writable_catalog()

        removed = catalog.pop(key, None) is not None
        self.store.save_catalog(catalog)

        if self.override.catalog and self.override.catalog.pop(key, None) is not None:
            removed = True

        if removed:
            logger.info("library entry %s purged", key)
        return removed

    def reset(self) -> Library:
        self.store.save_catalog(None)
        self.override.clear()
        logger.info("effect library reset to built-ins")
        return self.resolve()

    def export_json(self) -> str:
        return library_to_json(self.resolve(), indent=2)

    def import_json(self, raw: str) -> Decoded[Optional[Library]]:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            logger.warning("library import is not valid JSON: %s", e)
            return Decoded(
                value=None,
                error=InvalidFormat(source="library_import", message=str(e)),
            )

        decoded = library_from_data(data, source="library_import")
        if decoded.value is None:
            return decoded

        self.override.catalog = _copy_library(decoded.value)
        self.store.save_catalog(decoded.value)
        logger.info("imported effect library with %d entries", len(decoded.value))
        return decoded
