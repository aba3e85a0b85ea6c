"""
Trigger service application.
Review Insights Pipeline

The scheduler drives everything through POST /api/v1/cron/reviews; there is
no browser client, so no CORS layer.
"""

import logging
import sys
import os
from contextlib import asynccontextmanager

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI

from api.routes import router
from config.settings import settings
from db.database import init_db

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    missing = settings.missing_secrets()
    if missing:
        # Triggers answer 500 config_error until these are set.
        logger.error(f"Trigger service misconfigured, missing: {', '.join(missing)}")
    else:
        logger.info(f"Trigger service ready (budget {settings.CRON_MAX_SECONDS}s, "
                    f"max {settings.CRON_MAX_REVIEWS} reviews per run)")
    yield


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Time-boxed trigger for review sync, AI annotation and reply drafts.",
    lifespan=lifespan,
)

app.include_router(router, prefix="/api/v1")


@app.get("/", tags=["System"])
async def root():
    return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "trigger": "/api/v1/cron/reviews"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)
