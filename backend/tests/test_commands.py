import json

from combattracker.core.engine.commands import (
    AddCustomEntry,
    AddEffect,
    AddReminder,
    ClearEffects,
    CombatantIn,
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
from combattracker.core.engine.effects import EffectOverrides
from combattracker.core.engine.library import LibraryEntryPatch
from combattracker.core.engine.rules.apply import apply_command
from combattracker.core.engine.state import Actor

GM = Actor("gm", is_gm=True)
ALICE = Actor("alice")
BOB = Actor("bob")


def _start(ctx):
    ctx.subjects.add_subject("A", controllers=["alice"])
    ctx.subjects.add_subject("B")
    return apply_command(
        ctx,
        StartCombat(
            combatants=[
                CombatantIn(subject_id="A", initiative=15),
                CombatantIn(subject_id="B", initiative=10),
            ]
        ),
        GM,
    )


def test_start_and_next_persist_order(ctx):
    state, ev = _start(ctx)
    assert state.head.subject_id == "A"
    assert ev[0]["type"] == "CombatStarted"

    # anyone may pass the turn
    state, ev = apply_command(ctx, NextTurn(), BOB)
    assert state.head.subject_id == "B"
    assert ev[-1]["type"] == "TurnAnnounced"

    reloaded = ctx.orders.get_order().value
    assert reloaded[0].subject_id == "B"
    assert ctx.orders.get_round() == 1
    assert ctx.orders.get_seq() == state.seq


def test_seq_is_monotonic_across_commands(ctx):
    _, ev1 = _start(ctx)
    _, ev2 = apply_command(ctx, NextTurn(), GM)
    seqs = [e["seq"] for e in ev1 + ev2]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == len(seqs)


def test_start_uses_subject_initiative_bonus(ctx):
    ctx.subjects.add_subject("A", initiative_bonus=2)
    state, ev = apply_command(
        ctx, StartCombat(combatants=[CombatantIn(subject_id="A")]), GM
    )
    rolled = [e for e in ev if e["type"] == "InitiativeRolled"]
    assert rolled[0]["payload"]["bonus"] == 2
    assert rolled[0]["payload"]["initiative"] == rolled[0]["payload"]["roll"]["nat"] + 2


def test_gm_only_commands_rejected_for_players(ctx):
    _start(ctx)
    before = ctx.orders.get_order().value

    for cmd in (
        PrevTurn(),
        StopCombat(),
        AddCustomEntry(label="Timer"),
        TickRoundForAll(),
        SyncMarkers(subject_id="A"),
        ClearEffects(subject_id="A"),
        ResetLibrary(),
        ExportLibrary(),
        PurgeLibraryEntry(key="rage"),
    ):
        _, ev = apply_command(ctx, cmd, ALICE)
        assert len(ev) == 1
        assert ev[0]["type"] == "CommandRejected"
        assert ev[0]["payload"]["code"] == "PERMISSION_DENIED"

    assert ctx.orders.get_order().value == before


def test_next_on_empty_order_is_rejected(ctx):
    state, ev = apply_command(ctx, NextTurn(), GM)
    assert ev[0]["type"] == "CommandRejected"
    assert ev[0]["payload"]["code"] == "EMPTY_ORDER"
    assert state.order == []


def test_start_rejects_unknown_subject_and_empty_list(ctx):
    _, ev = apply_command(
        ctx, StartCombat(combatants=[CombatantIn(subject_id="ghost")]), GM
    )
    assert ev[0]["payload"]["code"] == "NOT_FOUND"

    _, ev = apply_command(ctx, StartCombat(combatants=[]), GM)
    assert ev[0]["payload"]["code"] == "INVALID_ARGUMENT"


def test_custom_entry_direction_and_default_label(ctx):
    _start(ctx)

    state, ev = apply_command(ctx, AddCustomEntry(start_value=3, direction="up"), GM)

    tail = state.order[-1]
    assert tail.label == "Custom Item"
    assert tail.formula == "+1"
    assert ev[0]["type"] == "CustomEntryAdded"


def test_controller_can_add_effect_others_cannot(ctx):
    _start(ctx)

    _, ev = apply_command(ctx, AddEffect(subject_id="A", key="prone"), ALICE)
    assert ev[0]["type"] == "EffectAdded"
    assert ev[0]["payload"]["from_library"] is True

    _, ev = apply_command(ctx, AddEffect(subject_id="A", key="blinded"), BOB)
    assert ev[0]["payload"]["code"] == "PERMISSION_DENIED"

    _, ev = apply_command(ctx, AddEffect(subject_id="ghost", key="blinded"), GM)
    assert ev[0]["payload"]["code"] == "NOT_FOUND"


def test_hidden_effects_are_gm_only(ctx):
    _start(ctx)
    hidden = EffectOverrides(visibility="hide")

    _, ev = apply_command(ctx, AddEffect(subject_id="A", key="Curse", overrides=hidden), ALICE)
    assert ev[0]["payload"]["code"] == "PERMISSION_DENIED"

    _, ev = apply_command(ctx, AddEffect(subject_id="A", key="Curse", overrides=hidden), GM)
    assert ev[0]["type"] == "EffectAdded"

    # для игрока скрытого эффекта как будто нет
    _, ev = apply_command(ctx, RemoveEffect(subject_id="A", name="curse"), ALICE)
    assert ev[0]["payload"]["code"] == "NOT_FOUND"

    _, ev = apply_command(ctx, RemoveEffect(subject_id="A", name="curse"), GM)
    assert ev[0]["type"] == "EffectRemoved"


def test_edit_and_reminder_and_clear(ctx):
    _start(ctx)
    apply_command(ctx, AddEffect(subject_id="A", key="prone"), GM)

    _, ev = apply_command(
        ctx, EditEffect(subject_id="A", name="Prone", duration=2, autochange="round"), ALICE
    )
    assert ev[0]["type"] == "EffectEdited"
    assert ev[0]["payload"]["effect"]["counter"] == 2

    _, ev = apply_command(ctx, AddReminder(subject_id="A", title="  "), ALICE)
    assert ev[0]["payload"]["code"] == "INVALID_ARGUMENT"

    _, ev = apply_command(ctx, AddReminder(subject_id="A", title="Concentrating"), ALICE)
    assert ev[0]["payload"]["effect"]["kind"] == "reminder"

    _, ev = apply_command(ctx, ClearEffects(subject_id="A"), GM)
    assert ev[0]["payload"]["count"] == 2


def test_edit_with_negative_duration_stores_no_countdown(ctx):
    _start(ctx)
    apply_command(ctx, AddEffect(subject_id="A", key="stunned"), GM)

    _, ev = apply_command(
        ctx, EditEffect(subject_id="A", name="Stunned", duration=-3, autochange="turn"), GM
    )

    assert ev[0]["type"] == "EffectEdited"
    (eff,) = ctx.subjects.get_effects("A").value
    assert (eff.duration, eff.counter) == (None, None)


def test_add_effect_with_unusable_overrides_is_rejected(ctx):
    _start(ctx)
    # в обход валидации модели: пустое имя доходит до сборки эффекта
    bad = EffectOverrides.model_construct(name="")

    _, ev = apply_command(ctx, AddEffect(subject_id="A", key="stunned", overrides=bad), GM)

    assert ev[0]["type"] == "CommandRejected"
    assert ev[0]["payload"]["code"] == "INVALID_ARGUMENT"
    assert ctx.subjects.get_effects("A").value == []


def test_turn_start_syncs_markers(ctx):
    _start(ctx)
    ctx.subjects.set_markers("B", ["fist"])

    _, ev = apply_command(ctx, NextTurn(), GM)

    synced = [e for e in ev if e["type"] == "MarkersSynced"]
    assert synced and synced[0]["payload"]["added"] == 1
    assert [e.name for e in ctx.subjects.get_effects("B").value] == ["Stunned"]


def test_library_commands(ctx):
    _, ev = apply_command(
        ctx, ConfigureLibraryEntry(key="rage", patch=LibraryEntryPatch(duration=4)), GM
    )
    assert ev[0]["payload"]["entry"]["duration"] == 4
    assert ev[0]["payload"]["entry"]["type"] == "trait"

    _, ev = apply_command(
        ctx, ConfigureLibraryEntry(key="rage", patch=LibraryEntryPatch(kind="boss")), GM
    )
    assert ev[0]["payload"]["code"] == "INVALID_ARGUMENT"

    _, ev = apply_command(ctx, PurgeLibraryEntry(key="nope"), GM)
    assert ev[0]["payload"]["code"] == "NOT_FOUND"

    _, ev = apply_command(ctx, ExportLibrary(), GM)
    exported = json.loads(ev[0]["payload"]["library_json"])
    assert exported["rage"]["duration"] == 4

    _, ev = apply_command(ctx, ImportLibrary(library_json="{broken"), GM)
    assert ev[0]["payload"]["code"] == "INVALID_FORMAT"

    _, ev = apply_command(
        ctx,
        ImportLibrary(library_json=json.dumps({"x": {"name": "X", "type": "spell"}})),
        GM,
    )
    assert ev[0]["type"] == "LibraryImported"
    assert ev[0]["payload"]["size"] == 1

    _, ev = apply_command(ctx, ResetLibrary(), GM)
    assert ev[0]["payload"]["size"] == 20
