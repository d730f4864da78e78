from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar, Union, cast
from urllib.parse import unquote

from pydantic import ValidationError

from combattracker.core.engine.errors import InvalidFormat
from combattracker.core.engine.state import (
    CUSTOM_SUBJECT_ID,
    DEFAULT_CUSTOM_LABEL,
    CustomEntry,
    EffectLibraryEntry,
    EffectRecord,
    SubjectEntry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Entry = Union[SubjectEntry, CustomEntry]
Library = Dict[str, EffectLibraryEntry]


@dataclass(frozen=True)
class Decoded(Generic[T]):
    """
    Результат чтения сохранённого состояния.
    Битый JSON не бросает исключение: value = дефолт, error = InvalidFormat.
    """

    value: T
    error: Optional[InvalidFormat] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _invalid(value: T, source: str, message: str, **meta: Any) -> Decoded[T]:
    err = InvalidFormat(source=source, message=message, meta=meta)
    logger.warning("invalid persisted %s: %s", source, message)
    return Decoded(value=value, error=err)


def _as_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


# ---------- turn order ----------


def entry_to_dict(entry: Entry) -> dict[str, Any]:
    """Плоский JSON: subjectId / priority / label / formula / pageRef."""
    if isinstance(entry, CustomEntry):
        return {
            "subjectId": CUSTOM_SUBJECT_ID,
            "priority": entry.priority,
            "label": entry.label,
            "formula": entry.formula,
            "pageRef": entry.page_ref,
        }
    return {
        "subjectId": entry.subject_id,
        "priority": entry.priority,
        "label": "",
        "formula": None,
        "pageRef": entry.page_ref,
    }


def entry_from_dict(d: dict[str, Any]) -> Entry:
    subject_id = str(d.get("subjectId", ""))
    priority = _as_int(d.get("priority"))
    page_ref = d.get("pageRef")

    if subject_id == CUSTOM_SUBJECT_ID:
        label = str(d.get("label") or "").strip() or DEFAULT_CUSTOM_LABEL
        formula = d.get("formula")
        return CustomEntry(
            label=label,
            priority=priority,
            formula=str(formula) if formula not in (None, "") else None,
            page_ref=page_ref,
        )

    if not subject_id:
        raise ValueError("turn order entry without subjectId")

    return SubjectEntry(subject_id=subject_id, priority=priority, page_ref=page_ref)


def order_to_json(order: Iterable[Entry]) -> str:
    return json.dumps([entry_to_dict(e) for e in order])


def order_from_json(raw: Optional[str]) -> Decoded[List[Entry]]:
    if raw is None or raw.strip() == "":
        return Decoded(value=[])

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return _invalid([], "turn_order", str(e))

    if not isinstance(data, list):
        return _invalid([], "turn_order", "turn order is not a list")

    out: List[Entry] = []
    try:
        for item in data:
            if not isinstance(item, dict):
                raise ValueError(f"entry is not an object: {item!r}")
            out.append(entry_from_dict(cast(dict[str, Any], item)))
    except (ValueError, ValidationError) as e:
        return _invalid([], "turn_order", str(e))

    return Decoded(value=out)


# ---------- effects ----------


def effect_to_dict(effect: EffectRecord) -> dict[str, Any]:
    return effect.model_dump(mode="json")


def effects_from_list(items: Any, source: str) -> Decoded[List[EffectRecord]]:
    if not isinstance(items, list):
        return _invalid([], source, "effects is not a list")
    try:
        return Decoded(value=[EffectRecord.model_validate(x) for x in items])
    except ValidationError as e:
        return _invalid([], source, str(e))


class AttributeEffectsCodec:
    """Связанный субъект: {"effects": [...]} целиком лежит в отдельном атрибуте."""

    source = "effects_attribute"

    def encode(self, effects: Iterable[EffectRecord]) -> str:
        return json.dumps({"effects": [effect_to_dict(e) for e in effects]})

    def decode(self, raw: Optional[str]) -> Decoded[List[EffectRecord]]:
        if raw is None or raw.strip() == "":
            return Decoded(value=[])
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            return _invalid([], self.source, str(e))
        if not isinstance(data, dict):
            return _invalid([], self.source, "combat data is not an object")
        return effects_from_list(data.get("effects", []), self.source)


STATUS_DIV_ID = "combatTrackerStatus"
_STATUS_DIV_RE = re.compile(
    r"<div[^>]*id=[\"']" + STATUS_DIV_ID + r"[\"'][^>]*>(.*?)</div>",
    re.IGNORECASE | re.DOTALL,
)


def _html_safe_json(obj: Any) -> str:
    # "<\/" и "\u0025" остаются валидным JSON, но не закрывают div и не раскодируются unquote
    return json.dumps(obj).replace("</", "<\\/").replace("%", "\\u0025")


class NotesEffectsCodec:
    """
    Несвязанный субъект: JSON прячется в скрытом <div> внутри свободных заметок.
    Остальной текст заметок не трогаем.
    """

    source = "effects_notes"

    def encode(self, notes: Optional[str], effects: Iterable[EffectRecord]) -> str:
        data = _html_safe_json({"effects": [effect_to_dict(e) for e in effects]})
        new_div = f'<div style="display: none;" id="{STATUS_DIV_ID}">{data}</div>'

        text = unquote(notes or "")
        if _STATUS_DIV_RE.search(text):
            return _STATUS_DIV_RE.sub(lambda _m: new_div, text, count=1)
        return text + new_div

    def decode(self, notes: Optional[str]) -> Decoded[List[EffectRecord]]:
        if not notes:
            return Decoded(value=[])

        m = _STATUS_DIV_RE.search(unquote(notes))
        if not m:
            return Decoded(value=[])

        payload = m.group(1).strip()
        if not payload:
            return Decoded(value=[])

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            return _invalid([], self.source, str(e))
        if not isinstance(data, dict):
            return _invalid([], self.source, "status payload is not an object")
        return effects_from_list(data.get("effects", []), self.source)


# ---------- markers ----------


def markers_to_str(markers: Iterable[str]) -> str:
    return ",".join(sorted({m for m in markers if m}))


def markers_from_str(raw: Optional[str]) -> set[str]:
    return {m.strip() for m in (raw or "").split(",") if m.strip()}


# ---------- effect library ----------


def library_to_data(library: Library) -> dict[str, Any]:
    # наружу отдаём историческое имя поля "type"
    return {
        key: entry.model_dump(mode="json", by_alias=True)
        for key, entry in library.items()
    }


def library_to_json(library: Library, *, indent: Optional[int] = None) -> str:
    return json.dumps(library_to_data(library), indent=indent)


def validate_library_data(data: Any) -> Optional[str]:
    """None если структура годится для импорта, иначе текст ошибки."""
    if not isinstance(data, dict) or not data:
        return "library must be a non-empty object"
    for key, value in data.items():
        if not isinstance(value, dict):
            return f"entry {key!r} is not an object"
        if not value.get("name"):
            return f"entry {key!r} is missing name"
        if not (value.get("kind") or value.get("type")):
            return f"entry {key!r} is missing kind"
    return None


def library_from_data(data: Any, source: str = "library") -> Decoded[Optional[Library]]:
    problem = validate_library_data(data)
    if problem is not None:
        return _invalid(None, source, problem)
    try:
        lib = {
            str(k).lower(): EffectLibraryEntry.model_validate(v)
            for k, v in cast(dict[str, Any], data).items()
        }
    except ValidationError as e:
        return _invalid(None, source, str(e))
    return Decoded(value=lib)


def library_from_json(raw: Optional[str], source: str = "library") -> Decoded[Optional[Library]]:
    """Пустая строка / None -> (None, ok): каталога ещё нет, это не ошибка."""
    if raw is None or raw.strip() == "":
        return Decoded(value=None)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        return _invalid(None, source, str(e))
    return library_from_data(data, source)
