from contextlib import asynccontextmanager
from datetime import datetime
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from accesslens.api import analytics, sources
from accesslens.api.deps import get_collector
from accesslens.collector import CollectorScheduler
from accesslens.config import settings
from accesslens.database import init_db
from accesslens.logging_config import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    init_db()
    scheduler = None
    if settings.RUN_SCHEDULER:
        scheduler = CollectorScheduler(get_collector())
        scheduler.start()
    app.state.scheduler = scheduler
    logger.info("%s %s started", settings.APP_NAME, settings.VERSION)
    yield
    if scheduler:
        scheduler.stop()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Access log collection and traffic analytics",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sources.router)
app.include_router(analytics.router)


@app.get("/")
async def root():
    return {
        "message": f"{settings.APP_NAME} - access log analytics",
        "version": settings.VERSION,
        "endpoints": {
            "sources": "/api/sources",
            "analytics": "/api/analytics/{source_id}/core-metrics",
            "docs": "/docs",
        },
    }


@app.get("/health")
async def health():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "scheduler": "running" if scheduler and scheduler.running() else "stopped",
    }


if __name__ == "__main__":
    uvicorn.run(
        "accesslens.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
