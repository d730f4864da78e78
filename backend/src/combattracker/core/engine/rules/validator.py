from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from combattracker.core.engine.commands import (
    AddCustomEntry,
    AddEffect,
    AddReminder,
    ClearEffects,
    Command,
    ConfigureLibraryEntry,
    EditEffect,
    ExportLibrary,
    ImportLibrary,
    NextTurn,
    PrevTurn,
    PurgeLibraryEntry,
    RemoveEffect,
    ResetLibrary,
    StartCombat,
    StopCombat,
    SyncMarkers,
    TickRoundForAll,
)
from combattracker.core.engine.effects import build_effect, can_control, find_effect
from combattracker.core.engine.errors import (
    EMPTY_ORDER,
    INVALID_ARGUMENT,
    NOT_FOUND,
    PERMISSION_DENIED,
)
from combattracker.core.engine.session import SessionContext
from combattracker.core.engine.state import EFFECT_KINDS, Actor, EffectRecord, TurnOrderState

# только GM
GM_ONLY = (
    StartCombat,
    StopCombat,
    PrevTurn,
    AddCustomEntry,
    TickRoundForAll,
    SyncMarkers,
    ClearEffects,
    ConfigureLibraryEntry,
    PurgeLibraryEntry,
    ResetLibrary,
    ExportLibrary,
    ImportLibrary,
)

# GM или тот, кто контролирует субъекта
SUBJECT_SCOPED = (AddEffect, RemoveEffect, EditEffect, AddReminder)


@dataclass
class ValidationError:
    code: str
    message: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    ok: bool
    errors: List[ValidationError] = field(default_factory=list)


def _err(code: str, message: str, **meta: Any) -> ValidationResult:
    return ValidationResult(
        ok=False, errors=[ValidationError(code=code, message=message, meta=meta)]
    )


_OK = ValidationResult(ok=True)


def _existing_effect(ctx: SessionContext, subject_id: str, name: str) -> Optional[EffectRecord]:
    return find_effect(ctx.subjects.get_effects(subject_id).value, name)


def _validate_subject_scoped(
    ctx: SessionContext, actor: Actor, cmd: Any
) -> ValidationResult:
    sid = cmd.subject_id
    if not ctx.subjects.has_subject(sid):
        return _err(NOT_FOUND, "Unknown subject_id", subject_id=sid)
    if not can_control(ctx.subjects, actor, sid):
        return _err(
            PERMISSION_DENIED,
            "Only the GM or a controller of the subject may change its effects",
            subject_id=sid,
            player_id=actor.player_id,
        )

    if isinstance(cmd, AddReminder):
        if not cmd.title.strip():
            return _err(INVALID_ARGUMENT, "Reminder title is empty")
        existing = _existing_effect(ctx, sid, cmd.title.strip())
        if existing is not None and existing.is_hidden and not actor.is_gm:
            return _err(PERMISSION_DENIED, "Hidden effect", name=existing.name)
        return _OK

    if isinstance(cmd, AddEffect):
        if not cmd.key.strip():
            return _err(INVALID_ARGUMENT, "Effect key is empty")
        try:
            effect, _ = build_effect(ctx.library, cmd.key, cmd.overrides)
        except PydanticValidationError as e:
            return _err(INVALID_ARGUMENT, "Invalid effect overrides", detail=str(e))
        existing = _existing_effect(ctx, sid, effect.name)
        hidden = effect.is_hidden or (existing is not None and existing.is_hidden)
        if hidden and not actor.is_gm:
            return _err(PERMISSION_DENIED, "Hidden effect", name=effect.name)
        return _OK

    # RemoveEffect / EditEffect
    existing = _existing_effect(ctx, sid, cmd.name)
    if existing is None or (existing.is_hidden and not actor.is_gm):
        # скрытый эффект для игрока как будто не существует
        return _err(NOT_FOUND, "Unknown effect", subject_id=sid, name=cmd.name)
    return _OK


def validate_command(
    ctx: SessionContext, state: TurnOrderState, cmd: Command, actor: Actor
) -> ValidationResult:
    if isinstance(cmd, GM_ONLY) and not actor.is_gm:
        return _err(
            PERMISSION_DENIED,
            f"{cmd.type} requires GM",
            player_id=actor.player_id,
        )

    if isinstance(cmd, StartCombat):
        if not cmd.combatants:
            return _err(INVALID_ARGUMENT, "Cannot start combat with zero combatants")
        seen: set[str] = set()
        for c in cmd.combatants:
            if c.subject_id in seen:
                return _err(
                    INVALID_ARGUMENT, "Duplicate subject_id", subject_id=c.subject_id
                )
            seen.add(c.subject_id)
            if not ctx.subjects.has_subject(c.subject_id):
                return _err(NOT_FOUND, "Unknown subject_id", subject_id=c.subject_id)
        return _OK

    if isinstance(cmd, (NextTurn, PrevTurn)):
        if not state.order:
            return _err(EMPTY_ORDER, "Turn order is empty")
        return _OK

    if isinstance(cmd, SUBJECT_SCOPED):
        return _validate_subject_scoped(ctx, actor, cmd)

    if isinstance(cmd, (ClearEffects, SyncMarkers)):
        if not ctx.subjects.has_subject(cmd.subject_id):
            return _err(NOT_FOUND, "Unknown subject_id", subject_id=cmd.subject_id)
        return _OK

    if isinstance(cmd, ConfigureLibraryEntry):
        if ctx.library.get(cmd.key) is None:
            return _err(NOT_FOUND, "Unknown library key", key=cmd.key)
        patch = cmd.patch
        if "kind" in patch.model_fields_set and patch.kind not in EFFECT_KINDS:
            return _err(
                INVALID_ARGUMENT,
                "kind must be one of " + ", ".join(EFFECT_KINDS),
                kind=patch.kind,
            )
        return _OK

    if isinstance(cmd, PurgeLibraryEntry):
        if ctx.library.get(cmd.key) is None:
            return _err(NOT_FOUND, "Unknown library key", key=cmd.key)
        return _OK

    return _OK
