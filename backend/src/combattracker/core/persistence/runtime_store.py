from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Union

from sqlalchemy.orm import Session

from combattracker.core.engine.errors import NotFoundError
from combattracker.core.engine.state import (
    CustomEntry,
    EffectLibraryEntry,
    SubjectEntry,
    TurnOrderState,
)
from combattracker.core.persistence.state_codec import (
    Decoded,
    library_from_json,
    library_to_json,
    order_from_json,
    order_to_json,
)
from combattracker.db.models import CombatSession

logger = logging.getLogger(__name__)

Entry = Union[SubjectEntry, CustomEntry]
Library = Dict[str, EffectLibraryEntry]


class OrderStore(Protocol):
    def get_order(self) -> Decoded[List[Entry]]: ...

    def set_order(self, order: Iterable[Entry]) -> None: ...

    def get_round(self) -> int: ...

    def set_round(self, round_: int) -> None: ...

    def get_seq(self) -> int: ...

    def set_seq(self, seq: int) -> None: ...


def load_state(store: OrderStore) -> TurnOrderState:
    """Битый order -> пустая очередь (InvalidFormat уже залогирован кодеком)."""
    order = store.get_order()
    return TurnOrderState(
        order=list(order.value), round=store.get_round(), seq=store.get_seq()
    )


def save_state(store: OrderStore, state: TurnOrderState) -> None:
    store.set_order(state.order)
    store.set_round(state.round)
    store.set_seq(state.seq)


# ---------- in-memory ----------


@dataclass
class InMemoryOrderStore:
    order_json: str = "[]"
    round: int = 0
    seq: int = 0

    def get_order(self) -> Decoded[List[Entry]]:
        return order_from_json(self.order_json)

    def set_order(self, order: Iterable[Entry]) -> None:
        self.order_json = order_to_json(order)

    def get_round(self) -> int:
        return self.round

    def set_round(self, round_: int) -> None:
        self.round = int(round_)

    def get_seq(self) -> int:
        return self.seq

    def set_seq(self, seq: int) -> None:
        self.seq = int(seq)


@dataclass
class InMemoryLibraryStore:
    library_json: Optional[str] = None

    def load_catalog(self) -> Decoded[Optional[Library]]:
        return library_from_json(self.library_json, source="custom_library")

    def save_catalog(self, catalog: Optional[Library]) -> None:
        self.library_json = None if catalog is None else library_to_json(catalog)


# ---------- SQL ----------


@dataclass
class _SessionRowMixin:
    db: Session
    session_id: str
    _row: Optional[CombatSession] = field(default=None, init=False, repr=False)

    def row(self) -> CombatSession:
        if self._row is None:
            self._row = self.db.get(CombatSession, self.session_id)
        if self._row is None:
            raise NotFoundError(
                f"session {self.session_id!r} not found", session_id=self.session_id
            )
        return self._row


@dataclass
class SqlOrderStore(_SessionRowMixin):
    def get_order(self) -> Decoded[List[Entry]]:
        return order_from_json(self.row().order_json)

    def set_order(self, order: Iterable[Entry]) -> None:
        self.row().order_json = order_to_json(order)
        self.db.flush()

    def get_round(self) -> int:
        return int(self.row().round or 0)

    def set_round(self, round_: int) -> None:
        self.row().round = int(round_)
        self.db.flush()

    def get_seq(self) -> int:
        return int(self.row().seq or 0)

    def set_seq(self, seq: int) -> None:
        self.row().seq = int(seq)
        self.db.flush()


@dataclass
class SqlLibraryStore(_SessionRowMixin):
    def load_catalog(self) -> Decoded[Optional[Library]]:
        return library_from_json(self.row().library_json, source="custom_library")

    def save_catalog(self, catalog: Optional[Library]) -> None:
        self.row().library_json = None if catalog is None else library_to_json(catalog)
        self.db.flush()
