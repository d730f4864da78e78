from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./combattracker.sqlite3"
    log_level: str = "INFO"
    # фиксированный seed -> воспроизводимые броски инициативы (удобно для тестов/демо)
    rng_seed: Optional[int] = None


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        database_url=os.environ.get(
            "COMBATTRACKER_DATABASE_URL", Settings.database_url
        ),
        log_level=os.environ.get("COMBATTRACKER_LOG_LEVEL", Settings.log_level).upper(),
        rng_seed=_env_int("COMBATTRACKER_RNG_SEED"),
    )
