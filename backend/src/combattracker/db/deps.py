from __future__ import annotations

from typing import Iterator

from sqlalchemy.orm import Session

from combattracker.db import session as db_session


def get_db() -> Iterator[Session]:
    # SessionLocal берём через модуль, чтобы тесты могли его подменить
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()
