"""
Health check endpoint.

Reports whether the record store answers and whether the
retention reaper thread is alive, so a load balancer can take an
instance without a working audit store out of rotation.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from activity_audit.config import Settings, get_settings
from activity_audit.models.base import get_db

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError:
        db_status = "unhealthy"

    reaper = getattr(request.app.state, "reaper", None)
    if not settings.REAPER_ENABLED:
        reaper_status = "disabled"
    elif reaper is not None and reaper.running:
        reaper_status = "running"
    else:
        reaper_status = "stopped"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "service": "activity-audit",
        "version": settings.APP_VERSION,
        "database": db_status,
        "reaper": reaper_status,
    }
