import pytest
from pydantic import ValidationError

from combattracker.core.engine.effects import (
    EffectOverrides,
    add_effect,
    add_reminder,
    can_control,
    clear_effects,
    edit_effect,
    remove_effect,
    require_control,
    tick_effects,
    visible_effects,
)
from combattracker.core.engine.errors import NotFoundError, PermissionDeniedError
from combattracker.core.engine.library import EffectLibraryResolver, LibraryOverride
from combattracker.core.engine.state import Actor, EffectRecord
from combattracker.core.persistence.runtime_store import InMemoryLibraryStore
from combattracker.core.persistence.subject_store import InMemorySubjectStore


def _lib():
    return EffectLibraryResolver(InMemoryLibraryStore(), LibraryOverride())


def test_stunned_expires_after_one_turn_and_clears_marker():
    store = InMemorySubjectStore()
    store.add_subject("X", markers=["blue"])

    eff = add_effect(store, _lib(), "X", "stunned")
    assert eff.counter == 1
    assert store.get_markers("X") == {"blue", "fist"}

    res = tick_effects(store, "X", "turn")

    assert [e.name for e in res.expired] == ["Stunned"]
    assert res.ticked == []
    assert store.get_effects("X").value == []
    assert store.get_markers("X") == {"blue"}


def test_counter_counts_down_and_never_persists_zero():
    store = InMemorySubjectStore()
    store.add_subject("X")
    add_effect(
        store,
        _lib(),
        "X",
        "Bless",
        EffectOverrides(duration=3, direction=-1, autochange="turn"),
    )

    seen = []
    for _ in range(2):
        tick_effects(store, "X", "turn")
        (eff,) = store.get_effects("X").value
        assert eff.counter > 0
        seen.append(eff.counter)
    assert seen == [2, 1]

    res = tick_effects(store, "X", "turn")
    assert [e.name for e in res.expired] == ["Bless"]
    assert store.get_effects("X").value == []


def test_tick_only_matching_trigger():
    store = InMemorySubjectStore()
    store.add_subject("X")
    lib = _lib()
    add_effect(store, lib, "X", "rage")  # round
    add_effect(store, lib, "X", "dodge")  # turn
    add_effect(store, lib, "X", "prone")  # бессрочно

    res = tick_effects(store, "X", "round")

    assert [e.name for e in res.ticked] == ["Rage"]
    by_name = {e.name: e for e in store.get_effects("X").value}
    assert by_name["Rage"].counter == 9
    assert by_name["Dodging"].counter == 1
    assert by_name["Prone"].counter is None


def test_counting_up_never_expires():
    store = InMemorySubjectStore()
    store.add_subject("X")
    add_effect(
        store,
        _lib(),
        "X",
        "Held breath",
        EffectOverrides(duration=1, direction=1, autochange="round"),
    )
    for _ in range(3):
        tick_effects(store, "X", "round")
    (eff,) = store.get_effects("X").value
    assert eff.counter == 4


def test_tick_unknown_subject_raises_and_writes_nothing():
    store = InMemorySubjectStore()
    with pytest.raises(NotFoundError):
        tick_effects(store, "nope", "turn")


def test_add_replaces_same_name_case_insensitive():
    store = InMemorySubjectStore()
    store.add_subject("X")
    lib = _lib()

    add_effect(store, lib, "X", "Poisoned")
    add_reminder(store, "X", "POISONED", "antidote next turn")

    effects = store.get_effects("X").value
    assert len(effects) == 1
    assert effects[0].name == "POISONED"
    assert effects[0].kind == "reminder"


def test_library_template_with_overrides():
    store = InMemorySubjectStore()
    store.add_subject("X")

    eff = add_effect(store, _lib(), "X", "charmed", EffectOverrides(duration=3))

    assert eff.kind == "spell"
    assert eff.duration == 3
    assert eff.counter == 3
    assert eff.autochange == "round"


def test_free_form_effect_is_reminder():
    store = InMemorySubjectStore()
    store.add_subject("X")

    eff = add_effect(store, _lib(), "X", "Marked", EffectOverrides(icon="target"))

    assert eff.kind == "reminder"
    assert eff.name == "Marked"
    assert eff.counter is None
    assert "target" in store.get_markers("X")


def test_remove_clears_only_its_marker():
    store = InMemorySubjectStore()
    store.add_subject("X", markers=["red"])
    lib = _lib()
    add_effect(store, lib, "X", "prone")
    add_effect(store, lib, "X", "grappled")

    assert remove_effect(store, "X", "PRONE") is True
    assert remove_effect(store, "X", "prone") is False

    assert [e.name for e in store.get_effects("X").value] == ["Grappled"]
    assert store.get_markers("X") == {"red", "grab"}


def test_edit_effect_restarts_counter():
    store = InMemorySubjectStore()
    store.add_subject("X")
    lib = _lib()
    add_effect(store, lib, "X", "prone")

    eff = edit_effect(store, "X", "prone", 3, "turn")
    assert (eff.duration, eff.counter, eff.direction, eff.autochange) == (3, 3, -1, "turn")

    eff = edit_effect(store, "X", "prone", 0, "bogus")
    assert (eff.duration, eff.counter, eff.direction, eff.autochange) == (
        None,
        None,
        None,
        None,
    )

    assert edit_effect(store, "X", "missing", 2, "turn") is None


def test_clear_effects_drops_everything():
    store = InMemorySubjectStore()
    store.add_subject("X", markers=["red"])
    lib = _lib()
    add_effect(store, lib, "X", "prone")
    add_effect(store, lib, "X", "blinded")

    assert clear_effects(store, "X") == 2
    assert store.get_effects("X").value == []
    assert store.get_markers("X") == set()


def test_counter_requires_duration():
    eff = EffectRecord(name="Odd", duration=None, counter=4, direction=-1, autochange="turn")
    assert eff.counter is None
    assert not eff.ticks_on("turn")


def test_hidden_effects_only_visible_to_gm():
    effects = [
        EffectRecord(name="Curse", visibility="hide"),
        EffectRecord(name="Prone"),
    ]
    assert [e.name for e in visible_effects(effects, Actor("p1"))] == ["Prone"]
    assert len(visible_effects(effects, Actor("gm", is_gm=True))) == 2


def test_control_by_controller_gm_or_all():
    store = InMemorySubjectStore()
    store.add_subject("A", controllers=["alice"])
    store.add_subject("B", controllers=["all"])

    assert can_control(store, Actor("alice"), "A")
    assert not can_control(store, Actor("bob"), "A")
    assert can_control(store, Actor("bob"), "B")
    assert can_control(store, Actor("gm", is_gm=True), "A")

    with pytest.raises(PermissionDeniedError) as exc:
        require_control(store, Actor("bob"), "A")
    assert exc.value.meta["player_id"] == "bob"


def test_notes_storage_keeps_surrounding_text():
    store = InMemorySubjectStore()
    store.add_subject("goblin", linked=False, gm_notes="Carries a key.")

    add_effect(store, _lib(), "goblin", "prone")

    notes = store.rows["goblin"].gm_notes
    assert notes.startswith("Carries a key.")
    assert 'id="combatTrackerStatus"' in notes
    assert [e.name for e in store.get_effects("goblin").value] == ["Prone"]


@pytest.mark.parametrize("duration", [0, -2])
def test_non_positive_duration_override_means_no_countdown(duration):
    store = InMemorySubjectStore()
    store.add_subject("X")

    add_effect(store, _lib(), "X", "stunned", EffectOverrides(duration=duration))
    add_effect(store, _lib(), "X", "Bless", EffectOverrides(duration=duration, autochange="turn"))

    for eff in store.get_effects("X").value:
        assert eff.duration is None
        assert eff.counter is None
    assert tick_effects(store, "X", "turn").expired == []


def test_overrides_reject_non_positive_counter_and_empty_name():
    with pytest.raises(ValidationError):
        EffectOverrides(counter=0)
    with pytest.raises(ValidationError):
        EffectOverrides(counter=-1)
    with pytest.raises(ValidationError):
        EffectOverrides(name="")


def test_edit_with_negative_duration_drops_countdown():
    store = InMemorySubjectStore()
    store.add_subject("X")
    add_effect(store, _lib(), "X", "stunned")

    updated = edit_effect(store, "X", "Stunned", -3, "turn")

    (eff,) = store.get_effects("X").value
    assert eff == updated
    assert (eff.duration, eff.counter, eff.direction) == (None, None, None)


def test_notes_storage_keeps_effect_with_closing_tag_in_description():
    store = InMemorySubjectStore()
    store.add_subject("goblin", linked=False)

    add_reminder(store, "goblin", "Note", "see </div> tag")
    add_effect(store, _lib(), "goblin", "stunned")

    decoded = store.get_effects("goblin")
    assert decoded.ok
    assert [e.name for e in decoded.value] == ["Note", "Stunned"]
