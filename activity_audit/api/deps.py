"""
Shared API dependencies.

Identity is supplied by the upstream identity collaborator as
headers and trusted as given. The audit service never verifies
tokens itself.
"""

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from activity_audit.config import Settings, get_settings
from activity_audit.models.base import get_db
from activity_audit.models.enums import CallerRole
from activity_audit.services.query_service import ActivityQueryService, Caller
from activity_audit.services.record_store import RecordStore
from activity_audit.services.risk_scorer import RiskScorer


def get_caller(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Caller:
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    try:
        role = CallerRole((x_actor_role or CallerRole.USER.value).lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown actor role '{x_actor_role}'",
        )
    return Caller(actor_id=x_actor_id, role=role)


def get_query_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ActivityQueryService:
    return ActivityQueryService(db, settings)


def get_record_store(settings: Settings = Depends(get_settings)) -> RecordStore:
    return RecordStore(settings=settings)


def get_risk_scorer(
    store: RecordStore = Depends(get_record_store),
    settings: Settings = Depends(get_settings),
) -> RiskScorer:
    return RiskScorer(store, settings)
