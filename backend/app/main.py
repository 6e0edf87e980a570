import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from models import async_session, engine
from api.monitoring import actions_router as monitoring_actions_router
from api.monitoring import router as monitoring_router
from api.webhooks import router as webhooks_router
from core.websocket import router as ws_router, transitions_to_ws_bridge
from services.monitoring import MonitoringModule

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("carewatch.main")

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("CareWatch backend starting... DEBUG=%s", settings.DEBUG)

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)

    # Monitoring engine (ingest, timers, notifications)
    monitoring = MonitoringModule(redis, async_session)
    app.state.monitoring = monitoring
    await monitoring.start()

    # Transitions → WebSocket bridge
    ws_bridge_task = asyncio.create_task(transitions_to_ws_bridge(redis))

    yield

    # Shutdown
    logger.info("CareWatch backend shutting down...")
    await monitoring.stop()

    ws_bridge_task.cancel()
    try:
        await ws_bridge_task
    except asyncio.CancelledError:
        pass

    await redis.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="CareWatch Monitoring API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks_router)
app.include_router(monitoring_router)
app.include_router(monitoring_actions_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}
