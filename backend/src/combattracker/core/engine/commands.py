from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from combattracker.core.engine.effects import EffectOverrides
from combattracker.core.engine.library import LibraryEntryPatch


class CommandBase(BaseModel):
    model_config = ConfigDict(extra="forbid")
    type: str


# ---------- turn order ----------


class CombatantIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject_id: str = Field(min_length=1)
    initiative: Optional[int] = None  # None -> бросок d20 + bonus
    bonus: Optional[int] = None  # None -> initiative_bonus субъекта


class StartCombat(CommandBase):
    type: Literal["StartCombat"] = "StartCombat"
    combatants: list[CombatantIn]


class StopCombat(CommandBase):
    type: Literal["StopCombat"] = "StopCombat"


class NextTurn(CommandBase):
    type: Literal["NextTurn"] = "NextTurn"


class PrevTurn(CommandBase):
    type: Literal["PrevTurn"] = "PrevTurn"


class AddCustomEntry(CommandBase):
    type: Literal["AddCustomEntry"] = "AddCustomEntry"
    label: str = ""  # пусто -> "Custom Item"
    start_value: int = 0
    direction: Literal["up", "down"] = "down"


class TickRoundForAll(CommandBase):
    type: Literal["TickRoundForAll"] = "TickRoundForAll"


# ---------- effects ----------


class AddEffect(CommandBase):
    type: Literal["AddEffect"] = "AddEffect"
    subject_id: str
    key: str = Field(min_length=1)
    overrides: Optional[EffectOverrides] = None


class RemoveEffect(CommandBase):
    type: Literal["RemoveEffect"] = "RemoveEffect"
    subject_id: str
    name: str


class EditEffect(CommandBase):
    type: Literal["EditEffect"] = "EditEffect"
    subject_id: str
    name: str
    duration: Optional[int] = None  # None/0 -> бессрочно
    autochange: Optional[str] = None


class AddReminder(CommandBase):
    type: Literal["AddReminder"] = "AddReminder"
    subject_id: str
    title: str
    description: Optional[str] = None


class ClearEffects(CommandBase):
    type: Literal["ClearEffects"] = "ClearEffects"
    subject_id: str


class SyncMarkers(CommandBase):
    type: Literal["SyncMarkers"] = "SyncMarkers"
    subject_id: str


# ---------- library ----------


class ConfigureLibraryEntry(CommandBase):
    type: Literal["ConfigureLibraryEntry"] = "ConfigureLibraryEntry"
    key: str
    patch: LibraryEntryPatch


class PurgeLibraryEntry(CommandBase):
    type: Literal["PurgeLibraryEntry"] = "PurgeLibraryEntry"
    key: str


class ResetLibrary(CommandBase):
    type: Literal["ResetLibrary"] = "ResetLibrary"


class ExportLibrary(CommandBase):
    type: Literal["ExportLibrary"] = "ExportLibrary"


class ImportLibrary(CommandBase):
    type: Literal["ImportLibrary"] = "ImportLibrary"
    library_json: str


Command = Union[
    StartCombat,
    StopCombat,
    NextTurn,
    PrevTurn,
    AddCustomEntry,
    TickRoundForAll,
    AddEffect,
    RemoveEffect,
    EditEffect,
    AddReminder,
    ClearEffects,
    SyncMarkers,
    ConfigureLibraryEntry,
    PurgeLibraryEntry,
    ResetLibrary,
    ExportLibrary,
    ImportLibrary,
]
