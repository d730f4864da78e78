from __future__ import annotations

import logging
from typing import List, Optional, Tuple

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
from combattracker.core.engine.effects import (
    add_effect,
    add_reminder,
    clear_effects,
    edit_effect,
    remove_effects,
    tick_effects,
)
from combattracker.core.engine.errors import INVALID_FORMAT, TrackerError
from combattracker.core.engine.events import (
    ev_command_rejected,
    ev_effect_added,
    ev_effect_edited,
    ev_effect_removed,
    ev_effects_cleared,
    ev_library_entry_configured,
    ev_library_entry_purged,
    ev_library_exported,
    ev_library_imported,
    ev_library_reset,
    ev_markers_synced,
)
from combattracker.core.engine.markers import sync_markers
from combattracker.core.engine.rules.validator import validate_command
from combattracker.core.engine.scheduler import Combatant, TurnScheduler
from combattracker.core.engine.session import SessionContext
from combattracker.core.engine.state import (
    DEFAULT_CUSTOM_LABEL,
    SYSTEM_ACTOR,
    Actor,
    TurnOrderState,
)
from combattracker.core.persistence.runtime_store import load_state, save_state
from combattracker.core.persistence.state_codec import effect_to_dict

logger = logging.getLogger(__name__)


def _reject(
    sched: TurnScheduler,
    cmd: Command,
    actor: Actor,
    code: str,
    message: str,
    meta: dict,
) -> List[dict]:
    logger.warning("%s rejected (%s): %s", cmd.type, code, message)
    sched.events.clear()
    sched.emit(
        ev_command_rejected,
        active_id=sched.active_id(),
        actor_id=actor.player_id,
        command=cmd.model_dump(),
        code=code,
        message=message,
        meta=meta,
    )
    return sched.events


def _scheduler(ctx: SessionContext, state: TurnOrderState) -> TurnScheduler:
    def ticker(subject_id: str, trigger: str):
        return tick_effects(ctx.subjects, subject_id, trigger)

    sched = TurnScheduler(state, ticker)

    def on_turn(subject_id: str) -> None:
        # в начале хода подтягиваем маркеры и эффекты друг к другу
        if not ctx.subjects.has_subject(subject_id):
            return
        r = sync_markers(ctx.subjects, ctx.library, subject_id)
        if r.changed:
            sched.emit(
                ev_markers_synced,
                active_id=subject_id,
                subject_id=subject_id,
                removed=r.removed,
                markers_added=r.markers_added,
                added=r.added,
            )

    sched.on_turn = on_turn
    return sched


def apply_command(
    ctx: SessionContext, cmd: Command, actor: Optional[Actor] = None
) -> Tuple[TurnOrderState, List[dict]]:
    """
    Возвращаем (state, events_as_dicts).
    При ошибке валидации возвращаем CommandRejected и НЕ сохраняем state.
    """
    actor = actor or SYSTEM_ACTOR
    state = load_state(ctx.orders)
    sched = _scheduler(ctx, state)

    vr = validate_command(ctx, state, cmd, actor)
    if not vr.ok:
        e = vr.errors[0]
        return state, _reject(sched, cmd, actor, e.code, e.message, e.meta)

    try:
        ok = _dispatch(ctx, sched, cmd, actor)
    except TrackerError as e:
        events = _reject(sched, cmd, actor, e.code, e.message, e.meta)
        # state мог успеть провернуться: отдаём то, что лежит в хранилище
        clean = load_state(ctx.orders)
        clean.seq = state.seq
        return clean, events

    if ok:
        save_state(ctx.orders, state)
    return state, sched.events


def _dispatch(
    ctx: SessionContext, sched: TurnScheduler, cmd: Command, actor: Actor
) -> bool:
    """False -> команда отклонена внутри (события уже заменены на CommandRejected)."""
    actor_id = actor.player_id

    # ---------- turn order ----------

    if isinstance(cmd, StartCombat):
        combatants = [
            Combatant(
                subject_id=c.subject_id,
                initiative=c.initiative,
                bonus=(
                    c.bonus
                    if c.bonus is not None
                    else ctx.subjects.get_initiative_bonus(c.subject_id)
                ),
            )
            for c in cmd.combatants
        ]
        sched.start(combatants, ctx.rng)
        return True

    if isinstance(cmd, NextTurn):
        sched.advance()
        return True

    if isinstance(cmd, PrevTurn):
        sched.retreat()
        return True

    if isinstance(cmd, StopCombat):
        sched.stop()
        return True

    if isinstance(cmd, AddCustomEntry):
        sched.add_custom_entry(
            label=cmd.label.strip() or DEFAULT_CUSTOM_LABEL,
            start_value=cmd.start_value,
            formula="+1" if cmd.direction == "up" else "-1",
        )
        return True

    if isinstance(cmd, TickRoundForAll):
        sched.tick_round_for_all()
        return True

    # ---------- effects ----------

    if isinstance(cmd, AddEffect):
        from_library = ctx.library.get(cmd.key) is not None
        effect = add_effect(ctx.subjects, ctx.library, cmd.subject_id, cmd.key, cmd.overrides)
        sched.emit(
            ev_effect_added,
            active_id=sched.active_id(),
            actor_id=actor_id,
            subject_id=cmd.subject_id,
            effect=effect_to_dict(effect),
            from_library=from_library,
        )
        return True

    if isinstance(cmd, AddReminder):
        effect = add_reminder(ctx.subjects, cmd.subject_id, cmd.title, cmd.description)
        sched.emit(
            ev_effect_added,
            active_id=sched.active_id(),
            actor_id=actor_id,
            subject_id=cmd.subject_id,
            effect=effect_to_dict(effect),
            from_library=False,
        )
        return True

    if isinstance(cmd, RemoveEffect):
        for removed in remove_effects(ctx.subjects, cmd.subject_id, [cmd.name]):
            sched.emit(
                ev_effect_removed,
                active_id=sched.active_id(),
                actor_id=actor_id,
                subject_id=cmd.subject_id,
                effect_name=removed.name,
                reason="removed",
            )
        return True

    if isinstance(cmd, EditEffect):
        updated = edit_effect(
            ctx.subjects, cmd.subject_id, cmd.name, cmd.duration, cmd.autochange
        )
        if updated is not None:
            sched.emit(
                ev_effect_edited,
                active_id=sched.active_id(),
                actor_id=actor_id,
                subject_id=cmd.subject_id,
                effect=effect_to_dict(updated),
            )
        return True

    if isinstance(cmd, ClearEffects):
        count = clear_effects(ctx.subjects, cmd.subject_id)
        sched.emit(
            ev_effects_cleared,
            active_id=sched.active_id(),
            actor_id=actor_id,
            subject_id=cmd.subject_id,
            count=count,
        )
        return True

    if isinstance(cmd, SyncMarkers):
        r = sync_markers(ctx.subjects, ctx.library, cmd.subject_id)
        sched.emit(
            ev_markers_synced,
            active_id=sched.active_id(),
            subject_id=cmd.subject_id,
            removed=r.removed,
            markers_added=r.markers_added,
            added=r.added,
        )
        return True

    # ---------- library ----------

    if isinstance(cmd, ConfigureLibraryEntry):
        entry = ctx.library.configure(cmd.key, cmd.patch)
        sched.emit(
            ev_library_entry_configured,
            actor_id=actor_id,
            key=cmd.key.strip().lower(),
            entry=entry.model_dump(by_alias=True),
        )
        return True

    if isinstance(cmd, PurgeLibraryEntry):
        ctx.library.purge(cmd.key)
        sched.emit(ev_library_entry_purged, actor_id=actor_id, key=cmd.key.strip().lower())
        return True

    if isinstance(cmd, ResetLibrary):
        lib = ctx.library.reset()
        sched.emit(ev_library_reset, actor_id=actor_id, size=len(lib))
        return True

    if isinstance(cmd, ExportLibrary):
        lib = ctx.library.resolve()
        sched.emit(
            ev_library_exported,
            actor_id=actor_id,
            library_json=ctx.library.export_json(),
            size=len(lib),
        )
        return True

    if isinstance(cmd, ImportLibrary):
        decoded = ctx.library.import_json(cmd.library_json)
        if decoded.value is None:
            err = decoded.error
            _reject(
                sched,
                cmd,
                actor,
                INVALID_FORMAT,
                err.message if err is not None else "library JSON is empty",
                dict(err.meta) if err is not None else {},
            )
            return False
        sched.emit(ev_library_imported, actor_id=actor_id, size=len(decoded.value))
        return True

    raise TrackerError(f"unsupported command {cmd.type}")
