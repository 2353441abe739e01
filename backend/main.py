import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


async def _reap_forever(registry, interval: int, retention: int) -> None:
    """Periodically drop sessions that ended more than `retention` seconds ago."""
    while True:
        await asyncio.sleep(interval)
        try:
            await registry.reap_completed(min_age_seconds=retention)
        except Exception:
            logger.exception("Reaper pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from services.session_registry import get_session_registry
    registry = get_session_registry()
    reaper = None
    if settings.reap_interval_seconds > 0:
        reaper = asyncio.create_task(
            _reap_forever(registry, settings.reap_interval_seconds, settings.session_retention_seconds),
            name="session-reaper",
        )
    logger.info("Nightfall session engine starting up...")
    yield
    if reaper is not None:
        reaper.cancel()
        try:
            await reaper
        except asyncio.CancelledError:
            pass
    await registry.shutdown()
    logger.info("Session engine shutting down.")


app = FastAPI(
    title="Nightfall",
    version="0.1.0",
    description="Server-authoritative session engine for a hidden-role social deduction game",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "nightfall", "version": "0.1.0"}


from routers.game_router import router as game_router

app.include_router(game_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
