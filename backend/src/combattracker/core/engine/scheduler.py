from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from combattracker.core.engine.effects import TickResult
from combattracker.core.engine.errors import EmptyOrderError, NotFoundError
from combattracker.core.engine.events import (
    Roll,
    ev_combat_started,
    ev_combat_stopped,
    ev_custom_entry_added,
    ev_custom_entry_advanced,
    ev_effect_expired,
    ev_effect_ticked,
    ev_initiative_rolled,
    ev_loop_guard_tripped,
    ev_round_started,
    ev_turn_announced,
    ev_turn_rewound,
)
from combattracker.core.engine.state import (
    ROUND_COUNTER_LABEL,
    CustomEntry,
    SubjectEntry,
    TurnOrderState,
    entry_display_name,
)
from combattracker.core.persistence.state_codec import entry_to_dict

logger = logging.getLogger(__name__)

Entry = Union[SubjectEntry, CustomEntry]

# ticker(subject_id, "turn" | "round") -> что натикало
Ticker = Callable[[str, str], TickResult]
TurnHook = Callable[[str], Any]


@dataclass
class Combatant:
    subject_id: str
    initiative: Optional[int] = None  # None -> бросаем d20 + bonus
    bonus: int = 0
    page_ref: Any = None


def _bump(state: TurnOrderState) -> int:
    state.seq += 1
    return state.seq


def round_counter() -> CustomEntry:
    return CustomEntry(label=ROUND_COUNTER_LABEL, priority=1, formula="+1")


def sort_by_priority(entries: Iterable[Entry]) -> List[Entry]:
    # sorted() стабилен: при равной инициативе сохраняется порядок ввода
    return sorted(entries, key=lambda e: -e.priority)


class TurnScheduler:
    """
    Очередь ходов: бойцы + кастомные счётчики, крутится как кольцо.
    Сама никуда не пишет: state меняется на месте, события копятся в self.events.
    """

    def __init__(
        self,
        state: TurnOrderState,
        ticker: Ticker,
        *,
        on_turn: Optional[TurnHook] = None,
        events: Optional[List[dict]] = None,
    ) -> None:
        self.state = state
        self.ticker = ticker
        self.on_turn = on_turn
        self.events: List[dict] = events if events is not None else []

    # ---------- helpers ----------

    def active_id(self) -> Optional[str]:
        head = self.state.head
        return entry_display_name(head) if head is not None else None

    def emit(self, factory: Callable[..., Any], **kwargs: Any) -> None:
        ev = factory(seq=_bump(self.state), round_=self.state.round, **kwargs)
        self.events.append(ev.model_dump())

    def _tick(self, subject_id: str, trigger: str) -> Optional[TickResult]:
        try:
            result = self.ticker(subject_id, trigger)
        except NotFoundError:
            # субъект удалили, а запись в очереди осталась: просто пропускаем
            logger.warning("tick %s skipped: subject %s not found", trigger, subject_id)
            return None

        for e in result.ticked:
            self.emit(
                ev_effect_ticked,
                active_id=self.active_id(),
                subject_id=subject_id,
                effect_name=e.name,
                trigger=trigger,
                counter=e.counter,
            )
        for e in result.expired:
            self.emit(
                ev_effect_expired,
                active_id=self.active_id(),
                subject_id=subject_id,
                effect_name=e.name,
                icon=e.icon,
            )
        return result

    def _announce(self, entry: Entry) -> None:
        self.emit(
            ev_turn_announced,
            active_id=entry_display_name(entry),
            entry=entry_to_dict(entry),
        )
        if isinstance(entry, SubjectEntry) and self.on_turn is not None:
            self.on_turn(entry.subject_id)

    def _require_order(self) -> None:
        if not self.state.order:
            raise EmptyOrderError("turn order is empty")

    def _guard_tripped(self, advances: int, limit: int) -> None:
        logger.warning(
            "loop guard tripped after %d advances (limit %d): no subject entry in order",
            advances,
            limit,
        )
        self.emit(
            ev_loop_guard_tripped,
            active_id=self.active_id(),
            advances=advances,
            limit=limit,
        )

    # ---------- operations ----------

    def roll_initiative(self, combatant: Combatant, rng: random.Random) -> int:
        nat = rng.randint(1, 20)
        total = nat + int(combatant.bonus)
        roll = Roll(
            formula=f"1d20{combatant.bonus:+d}" if combatant.bonus else "1d20",
            dice=[nat],
            bonus=int(combatant.bonus),
            total=total,
            nat=nat,
        )
        self.emit(ev_initiative_rolled, subject_id=combatant.subject_id, roll=roll)
        return total

    def start(self, combatants: Iterable[Combatant], rng: random.Random) -> Optional[Entry]:
        entries: List[Entry] = []
        for c in combatants:
            priority = (
                int(c.initiative)
                if c.initiative is not None
                else self.roll_initiative(c, rng)
            )
            entries.append(
                SubjectEntry(subject_id=c.subject_id, priority=priority, page_ref=c.page_ref)
            )

        self.state.order = [round_counter(), *sort_by_priority(entries)]
        self.state.round = 1

        self.emit(
            ev_combat_started, order=[entry_to_dict(e) for e in self.state.order]
        )
        self.emit(ev_round_started, active_id=ROUND_COUNTER_LABEL)
        logger.info("combat started with %d combatants", len(entries))

        # пропускаем кастомные записи в голове без применения формулы
        limit = len(self.state.order)
        advances = 0
        while isinstance(self.state.head, CustomEntry):
            if advances >= limit:
                self._guard_tripped(advances, limit)
                return self.state.head
            self._announce(self.state.head)
            self.state.rotate_forward()
            advances += 1

        head = self.state.head
        if head is not None:
            self._announce(head)
        return head

    def _step_onto_custom(self, entry: CustomEntry) -> None:
        before = entry.priority
        after = entry.apply_formula()
        self.emit(
            ev_custom_entry_advanced,
            label=entry.label,
            before=before,
            after=after,
            formula=entry.formula,
        )

        if entry.is_round_counter:
            self.state.round = after
            self.emit(ev_round_started, active_id=entry.label)
            logger.debug("round %d started", after)
            self.tick_round_for_all()

    def advance(self) -> Entry:
        self._require_order()

        outgoing = self.state.head
        if isinstance(outgoing, SubjectEntry):
            self._tick(outgoing.subject_id, "turn")

        limit = len(self.state.order)
        advances = 0
        while True:
            self.state.rotate_forward()
            advances += 1

            head = self.state.head
            if not isinstance(head, CustomEntry):
                break

            self._step_onto_custom(head)
            if advances >= limit:
                self._guard_tripped(advances, limit)
                return head

        self._announce(head)
        logger.debug("turn passed to %s", entry_display_name(head))
        return head

    def retreat(self) -> Entry:
        # назад без отката: счётчики эффектов и формулы не возвращаются
        self._require_order()
        self.state.rotate_backward()

        head = self.state.head
        self.emit(
            ev_turn_rewound,
            active_id=entry_display_name(head),
            entry=entry_to_dict(head),
        )
        return head

    def add_custom_entry(
        self, label: str, start_value: int, formula: Optional[str]
    ) -> CustomEntry:
        entry = CustomEntry(label=label, priority=int(start_value), formula=formula)
        self.state.order.append(entry)
        self.emit(
            ev_custom_entry_added,
            active_id=self.active_id(),
            label=entry.label,
            priority=entry.priority,
            formula=entry.formula,
        )
        return entry

    def tick_round_for_all(self) -> List[Tuple[str, TickResult]]:
        results: List[Tuple[str, TickResult]] = []
        for subject_id in self.state.subject_ids():
            r = self._tick(subject_id, "round")
            if r is not None:
                results.append((subject_id, r))
        return results

    def stop(self) -> int:
        last_round = self.state.round
        self.state.order = []
        self.state.round = 0
        self.emit(ev_combat_stopped, last_round=last_round)
        logger.info("combat stopped after round %d", last_round)
        return last_round
