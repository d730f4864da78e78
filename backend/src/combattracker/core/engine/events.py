from __future__ import annotations

from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, ConfigDict

from combattracker.core.engine.errors import LOOP_GUARD_TRIPPED


class Roll(BaseModel):
    roll_id: UUID = Field(default_factory=uuid4)
    formula: str
    dice: list[int]
    bonus: int = 0
    total: int
    nat: Optional[int] = None


class EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_id: UUID = Field(default_factory=uuid4)
    seq: int
    type: str

    round: int
    active_id: Optional[str] = None  # subject_id или label кастомной записи в голове
    actor_id: Optional[str] = None

    payload: dict[str, Any] = Field(default_factory=dict)


def ev_command_rejected(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    actor_id: Optional[str],
    command: dict,
    code: str,
    message: str,
    meta: dict,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="CommandRejected",
        round=round_,
        active_id=active_id,
        actor_id=actor_id,
        payload={
            "command": command,
            "code": code,
            "message": message,
            "meta": meta,
        },
    )


def ev_combat_started(*, seq: int, round_: int, order: list[dict]) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="CombatStarted",
        round=round_,
        active_id=None,
        actor_id=None,
        payload={"order": order},
    )


def ev_initiative_rolled(
    *, seq: int, round_: int, subject_id: str, roll: Roll
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="InitiativeRolled",
        round=round_,
        active_id=None,
        actor_id=subject_id,
        payload={
            "subject_id": subject_id,
            "roll": roll.model_dump(mode="json"),
            "bonus": roll.bonus,
            "initiative": roll.total,
        },
    )


def ev_turn_announced(
    *, seq: int, round_: int, active_id: str, entry: dict
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="TurnAnnounced",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={"entry": entry},
    )


def ev_turn_rewound(
    *, seq: int, round_: int, active_id: str, entry: dict
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="TurnRewound",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={"entry": entry},
    )


def ev_round_started(*, seq: int, round_: int, active_id: str) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="RoundStarted",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={"round": round_},
    )


def ev_custom_entry_advanced(
    *, seq: int, round_: int, label: str, before: int, after: int, formula: str | None
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="CustomEntryAdvanced",
        round=round_,
        active_id=label,
        actor_id=None,
        payload={
            "label": label,
            "formula": formula,
            "before": before,
            "after": after,
        },
    )


def ev_custom_entry_added(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    label: str,
    priority: int,
    formula: str | None,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="CustomEntryAdded",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={"label": label, "priority": priority, "formula": formula},
    )


def ev_loop_guard_tripped(
    *, seq: int, round_: int, active_id: Optional[str], advances: int, limit: int
) -> EventEnvelope:
    # warning, не ошибка: очередь остаётся как есть
    return EventEnvelope(
        seq=seq,
        type="LoopGuardTripped",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={"code": LOOP_GUARD_TRIPPED, "advances": advances, "limit": limit},
    )


def ev_combat_stopped(*, seq: int, round_: int, last_round: int) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="CombatStopped",
        round=round_,
        active_id=None,
        actor_id=None,
        payload={"last_round": last_round},
    )


def ev_effect_ticked(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    subject_id: str,
    effect_name: str,
    trigger: str,
    counter: int,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="EffectTicked",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={
            "subject_id": subject_id,
            "effect_name": effect_name,
            "trigger": trigger,
            "counter": counter,
        },
    )


def ev_effect_expired(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    subject_id: str,
    effect_name: str,
    icon: str | None,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="EffectExpired",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={"subject_id": subject_id, "effect_name": effect_name, "icon": icon},
    )


def ev_effect_added(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    actor_id: Optional[str],
    subject_id: str,
    effect: dict,
    from_library: bool,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="EffectAdded",
        round=round_,
        active_id=active_id,
        actor_id=actor_id,
        payload={
            "subject_id": subject_id,
            "effect": effect,
            "from_library": from_library,
        },
    )


def ev_effect_removed(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    actor_id: Optional[str],
    subject_id: str,
    effect_name: str,
    reason: str,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="EffectRemoved",
        round=round_,
        active_id=active_id,
        actor_id=actor_id,
        payload={
            "subject_id": subject_id,
            "effect_name": effect_name,
            "reason": reason,
        },
    )


def ev_effect_edited(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    actor_id: Optional[str],
    subject_id: str,
    effect: dict,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="EffectEdited",
        round=round_,
        active_id=active_id,
        actor_id=actor_id,
        payload={"subject_id": subject_id, "effect": effect},
    )


def ev_effects_cleared(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    actor_id: Optional[str],
    subject_id: str,
    count: int,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="EffectsCleared",
        round=round_,
        active_id=active_id,
        actor_id=actor_id,
        payload={"subject_id": subject_id, "count": count},
    )


def ev_markers_synced(
    *,
    seq: int,
    round_: int,
    active_id: Optional[str],
    subject_id: str,
    removed: int,
    markers_added: int,
    added: int,
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="MarkersSynced",
        round=round_,
        active_id=active_id,
        actor_id=None,
        payload={
            "subject_id": subject_id,
            "removed": removed,
            "markers_added": markers_added,
            "added": added,
        },
    )


def ev_library_entry_configured(
    *, seq: int, round_: int, actor_id: Optional[str], key: str, entry: dict
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="LibraryEntryConfigured",
        round=round_,
        active_id=None,
        actor_id=actor_id,
        payload={"key": key, "entry": entry},
    )


def ev_library_entry_purged(
    *, seq: int, round_: int, actor_id: Optional[str], key: str
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="LibraryEntryPurged",
        round=round_,
        active_id=None,
        actor_id=actor_id,
        payload={"key": key},
    )


def ev_library_reset(
    *, seq: int, round_: int, actor_id: Optional[str], size: int
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="LibraryReset",
        round=round_,
        active_id=None,
        actor_id=actor_id,
        payload={"size": size},
    )


def ev_library_exported(
    *, seq: int, round_: int, actor_id: Optional[str], library_json: str, size: int
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="LibraryExported",
        round=round_,
        active_id=None,
        actor_id=actor_id,
        payload={"library_json": library_json, "size": size},
    )


def ev_library_imported(
    *, seq: int, round_: int, actor_id: Optional[str], size: int
) -> EventEnvelope:
    return EventEnvelope(
        seq=seq,
        type="LibraryImported",
        round=round_,
        active_id=None,
        actor_id=actor_id,
        payload={"size": size},
    )
