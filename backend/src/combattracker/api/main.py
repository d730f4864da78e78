import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from combattracker.api.routers.sessions import router as sessions_router
from combattracker.api.routers.subjects import router as subjects_router
from combattracker.core.engine.session import SessionRegistry
from combattracker.db.init_db import init_db
from combattracker.settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Combat Tracker", lifespan=lifespan)

# локи, override библиотеки и RNG по сессиям: живут пока жив процесс
app.state.registry = SessionRegistry(rng_seed=settings.rng_seed)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(sessions_router)
app.include_router(subjects_router)
