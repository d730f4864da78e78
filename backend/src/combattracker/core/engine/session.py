from __future__ import annotations

import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from combattracker.core.engine.library import EffectLibraryResolver, LibraryOverride
from combattracker.core.persistence.runtime_store import OrderStore
from combattracker.core.persistence.subject_store import SubjectStore


@dataclass
class SessionContext:
    """Всё, что нужно одной команде. Собирается на запрос, никакого глобального состояния."""

    session_id: str
    subjects: SubjectStore
    orders: OrderStore
    library: EffectLibraryResolver
    rng: random.Random


@dataclass
class _SessionSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    override: LibraryOverride = field(default_factory=LibraryOverride)
    rng: random.Random = field(default_factory=random.Random)


class SessionRegistry:
    """
    Живёт на app.state. Держит то, что не пишется в БД:
    лок на сессию (один писатель), эфемерный override библиотеки и RNG.
    """

    def __init__(self, rng_seed: Optional[int] = None) -> None:
        self.rng_seed = rng_seed
        self._slots: Dict[str, _SessionSlot] = {}
        self._guard = threading.Lock()

    def _slot(self, session_id: str) -> _SessionSlot:
        with self._guard:
            slot = self._slots.get(session_id)
            if slot is None:
                slot = _SessionSlot(rng=random.Random(self.rng_seed))
                self._slots[session_id] = slot
            return slot

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        slot = self._slot(session_id)
        with slot.lock:
            yield

    def override(self, session_id: str) -> LibraryOverride:
        return self._slot(session_id).override

    def rng(self, session_id: str) -> random.Random:
        return self._slot(session_id).rng

    def forget(self, session_id: str) -> None:
        with self._guard:
            self._slots.pop(session_id, None)

    def context(
        self,
        session_id: str,
        *,
        subjects: SubjectStore,
        orders: OrderStore,
        library_store,
    ) -> SessionContext:
        return SessionContext(
            session_id=session_id,
            subjects=subjects,
            orders=orders,
            library=EffectLibraryResolver(library_store, self.override(session_id)),
            rng=self.rng(session_id),
        )
