from __future__ import annotations

import random

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from combattracker.api.main import app
from combattracker.core.engine.library import EffectLibraryResolver, LibraryOverride
from combattracker.core.engine.session import SessionContext, SessionRegistry
from combattracker.core.persistence.runtime_store import (
    InMemoryLibraryStore,
    InMemoryOrderStore,
)
from combattracker.core.persistence.subject_store import InMemorySubjectStore
from combattracker.db.base import Base
import combattracker.db.session as db_session
import combattracker.db.init_db as db_init
from combattracker.db.deps import get_db


@pytest.fixture(scope="session")
def engine():
    # SQLite in-memory (один коннект на всю сессию тестов)
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    return eng


@pytest.fixture(scope="session")
def TestingSessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture(scope="session", autouse=True)
def _patch_db(engine, TestingSessionLocal):
    # патчим "боевые" engine/SessionLocal на тестовые
    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    db_init.engine = engine

    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(TestingSessionLocal):
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    # свежий реестр на каждый тест: override библиотеки не протекает между тестами
    app.state.registry = SessionRegistry(rng_seed=1234)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def ctx():
    """Контекст сессии целиком в памяти (без БД)."""
    return SessionContext(
        session_id="test",
        subjects=InMemorySubjectStore(),
        orders=InMemoryOrderStore(),
        library=EffectLibraryResolver(InMemoryLibraryStore(), LibraryOverride()),
        rng=random.Random(1234),
    )
