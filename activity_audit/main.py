"""
Activity Audit Service: FastAPI application.

This is the entry point for the application. Routers, middleware
and the background pieces (finalizer pool, retention reaper) are
wired up here.

Business routers that want their operations tracked use the
interceptor on app.state.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from activity_audit.api.activity import router as activity_router
from activity_audit.api.health import router as health_router
from activity_audit.config import get_settings
from activity_audit.middleware.request_context import RequestContextMiddleware
from activity_audit.services.interceptor import ActivityInterceptor
from activity_audit.services.reaper import RetentionReaper
from activity_audit.services.record_store import RecordStore
from activity_audit.services.risk_scorer import RiskScorer

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = RecordStore(settings=settings)
    scorer = RiskScorer(store, settings)
    app.state.interceptor = ActivityInterceptor(
        store=store, settings=settings, risk_scorer=scorer
    )
    app.state.reaper = RetentionReaper(store, settings, risk_scorer=scorer)

    if settings.REAPER_ENABLED:
        app.state.reaper.start()
    logger.info("%s %s started (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)

    yield

    app.state.reaper.stop()
    app.state.interceptor.shutdown(wait=True)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Activity and audit logging for tracked account operations",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Register routers
app.include_router(health_router)
app.include_router(activity_router)


def run() -> None:
    """Serve the app with uvicorn using HOST/PORT from settings."""
    import uvicorn

    uvicorn.run(
        "activity_audit.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    run()
