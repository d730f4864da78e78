from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EffectKind = Literal["condition", "spell", "trait", "reminder"]
Autochange = Literal["turn", "round", "manual"]
Visibility = Literal["show", "hide"]
Trigger = Literal["turn", "round"]

EFFECT_KINDS: tuple[str, ...] = ("condition", "spell", "trait", "reminder")

# id "-1" в сохранённом turn order = кастомная запись (не боец)
CUSTOM_SUBJECT_ID = "-1"
ROUND_COUNTER_LABEL = "Round Counter"
DEFAULT_CUSTOM_LABEL = "Custom Item"

_FORMULA_RE = re.compile(r"^\s*([+-]?\s*\d+)")


def parse_formula(formula: Optional[str]) -> int:
    """'+1' / '-1' / '+2' -> int. Мусор -> 0 (запись просто не меняется)."""
    if not formula:
        return 0
    m = _FORMULA_RE.match(formula)
    if not m:
        return 0
    return int(m.group(1).replace(" ", ""))


def positive_or_none(value: Optional[int]) -> Optional[int]:
    """Длительность 0 или меньше = бессрочно."""
    if value is None or value <= 0:
        return None
    return value


# ---------- turn order ----------


class SubjectEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["subject"] = "subject"
    subject_id: str
    priority: int = 0
    page_ref: Any = None


class CustomEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["custom"] = "custom"
    label: str = Field(min_length=1)
    priority: int = 0
    formula: Optional[str] = None  # "+1" / "-1", применяется при выходе в голову очереди
    page_ref: Any = None

    @property
    def is_round_counter(self) -> bool:
        return self.label == ROUND_COUNTER_LABEL

    def apply_formula(self) -> int:
        self.priority += parse_formula(self.formula)
        return self.priority


def entry_display_name(entry: Any) -> str:
    if isinstance(entry, CustomEntry):
        return entry.label
    return entry.subject_id


@dataclass
class TurnOrderState:
    order: List[Union[SubjectEntry, CustomEntry]] = field(default_factory=list)
    round: int = 0  # 0 = бой не идёт
    seq: int = 0

    @property
    def head(self) -> Optional[Union[SubjectEntry, CustomEntry]]:
        return self.order[0] if self.order else None

    @property
    def in_combat(self) -> bool:
        return self.round > 0

    def subject_entries(self) -> Iterator[SubjectEntry]:
        for e in self.order:
            if isinstance(e, SubjectEntry):
                yield e

    def subject_ids(self) -> list[str]:
        return [e.subject_id for e in self.subject_entries()]

    def rotate_forward(self) -> None:
        self.order.append(self.order.pop(0))

    def rotate_backward(self) -> None:
        self.order.insert(0, self.order.pop())


# ---------- effects ----------


class EffectLibraryEntry(BaseModel):
    """Шаблон эффекта в библиотеке: как EffectRecord, только без counter."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = Field(min_length=1)
    # в экспортированном JSON поле исторически называется "type"
    kind: EffectKind = Field(default="condition", alias="type")
    icon: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = None
    direction: Optional[Literal[-1, 1]] = None
    autochange: Optional[Autochange] = None
    visibility: Visibility = "show"

    @field_validator("duration")
    @classmethod
    def _positive_duration(cls, v: Optional[int]) -> Optional[int]:
        return positive_or_none(v)

    def instantiate(self, **overrides: Any) -> "EffectRecord":
        data = self.model_dump(by_alias=False)
        data["counter"] = data["duration"]
        data.update(overrides)
        if "duration" in overrides and "counter" not in overrides:
            data["counter"] = data["duration"]
        return EffectRecord.model_validate(data)


class EffectRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    kind: EffectKind = "reminder"
    icon: Optional[str] = None
    description: Optional[str] = None

    duration: Optional[int] = None  # None = висит бесконечно
    counter: Optional[int] = None  # None = пассивный (не тикает)
    direction: Optional[Literal[-1, 1]] = None
    autochange: Optional[Autochange] = None

    visibility: Visibility = "show"

    @field_validator("duration")
    @classmethod
    def _positive_duration(cls, v: Optional[int]) -> Optional[int]:
        return positive_or_none(v)

    @model_validator(mode="after")
    def _no_counter_without_duration(self) -> "EffectRecord":
        if self.duration is None:
            self.counter = None
        return self

    @property
    def is_hidden(self) -> bool:
        return self.visibility == "hide"

    def ticks_on(self, trigger: str) -> bool:
        return (
            self.autochange == trigger
            and self.duration is not None
            and self.counter is not None
            and self.direction is not None
        )

    def same_name(self, name: str) -> bool:
        return self.name.casefold() == name.casefold()


# ---------- actors ----------


@dataclass(frozen=True)
class Actor:
    player_id: str
    is_gm: bool = False


SYSTEM_ACTOR = Actor(player_id="system", is_gm=True)
