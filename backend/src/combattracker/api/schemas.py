from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from combattracker.core.engine.state import Actor, EffectRecord


class ActorDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    player_id: str = "gm"
    is_gm: bool = True

    def to_actor(self) -> Actor:
        return Actor(player_id=self.player_id, is_gm=self.is_gm)


# ---- sessions ----


class SessionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str


class SessionOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    created_at: datetime
    updated_at: datetime


class SessionStateResponse(BaseModel):
    session_id: str
    round: int
    seq: int
    active_id: Optional[str] = None
    order: List[Dict[str, Any]] = Field(default_factory=list)


class ApplyCommandRequest(BaseModel):
    # command как dict: тип разбирается через TypeAdapter(Command)
    command: Dict[str, Any]
    actor: ActorDTO = Field(default_factory=ActorDTO)


class ApplyCommandResponse(SessionStateResponse):
    events_delta: List[Dict[str, Any]] = Field(default_factory=list)


# ---- subjects ----


class SubjectCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    # есть персонаж -> эффекты хранятся в отдельном поле, иначе в заметках
    character_id: Optional[str] = None
    initiative_bonus: int = 0
    controlled_by: List[str] = Field(default_factory=list)
    markers: List[str] = Field(default_factory=list)
    gm_notes: str = ""


class SubjectOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    session_id: str
    name: str
    character_id: Optional[str] = None
    initiative_bonus: int
    controlled_by: List[str]
    markers: List[str]
    effects: List[EffectRecord]


class MarkersUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    markers: List[str]
    actor: ActorDTO = Field(default_factory=ActorDTO)
