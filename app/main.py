import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.database import close_db, init_db
from app.routers import history, preferences, sessions, stream

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting DiagCode...")
    await init_db()
    logger.info("Database initialized")
    yield
    await close_db()
    logger.info("DiagCode shut down")


app = FastAPI(
    title="DiagCode",
    description="AI-assisted diagnosis coding from clinical notes and scanned documents",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sessions.router)
app.include_router(history.router)
app.include_router(preferences.router)
app.include_router(stream.router)
