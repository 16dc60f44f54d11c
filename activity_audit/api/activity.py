"""
Activity log API endpoints.

The API layer is thin: it turns headers and query parameters
into a Caller, filters and a page, and delegates everything else
to ActivityQueryService. Service errors map to HTTP status codes:
- ValidationFailure / ValueError -> 400
- AuthorizationFailure -> 403
- RecordNotFound -> 404

Query parameters and response bodies are camelCase on the wire.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from activity_audit.api.deps import get_caller, get_query_service, get_risk_scorer
from activity_audit.errors import AuthorizationFailure, RecordNotFound
from activity_audit.models.enums import ActivityKind, ActivityStatus, EntityType, ExportFormat
from activity_audit.schemas.activity import (
    ActivityRecordResponse,
    ExportResponse,
    PaginatedActivityResponse,
    SecurityFlagRequest,
    SecurityFlagResponse,
    SecurityListingResponse,
    StatisticsResponse,
)
from activity_audit.services.query_service import (
    ActivityFilters,
    ActivityQueryService,
    Caller,
    PageRequest,
)
from activity_audit.services.risk_scorer import RiskScorer

router = APIRouter(prefix="/activity-logs", tags=["Activity Logs"])


@contextmanager
def _http_errors():
    try:
        yield
    except AuthorizationFailure as e:
        raise HTTPException(status_code=403, detail=str(e))
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _filters(
    activity_kind: ActivityKind | None = Query(None, alias="activityKind"),
    status: ActivityStatus | None = None,
    start_date: datetime | None = Query(None, alias="startDate"),
    end_date: datetime | None = Query(None, alias="endDate"),
) -> ActivityFilters:
    return ActivityFilters(
        activity_kind=activity_kind,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )


def _page(page: int = Query(1), limit: int = Query(20)) -> PageRequest:
    # Range checks happen in the service so they come back as 400
    return PageRequest(page=page, limit=limit)


# --- Caller-scoped endpoints ---

@router.get("", response_model=PaginatedActivityResponse)
def user_timeline(
    actor_id: str | None = Query(None, alias="actorId"),
    filters: ActivityFilters = Depends(_filters),
    page: PageRequest = Depends(_page),
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """
    The caller's own activity, newest first.

    Admins may pass actorId to view someone else's timeline.
    """
    with _http_errors():
        return service.user_timeline(caller, filters, page, actor_id=actor_id)


@router.get("/statistics", response_model=StatisticsResponse)
def statistics(
    time_range: str = Query("30d", alias="timeRange"),
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """
    Activity rollups over the trailing window (e.g. "7d", "30d").

    If the store is unavailable the response is empty with
    degraded=true rather than an error.
    """
    with _http_errors():
        return service.statistics(caller, time_range)


@router.get("/account/{account_id}", response_model=PaginatedActivityResponse)
def account_timeline(
    account_id: str,
    filters: ActivityFilters = Depends(_filters),
    page: PageRequest = Depends(_page),
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """Activity recorded against one account."""
    with _http_errors():
        return service.target_timeline(
            caller, EntityType.ACCOUNT, account_id, filters, page
        )


@router.get(
    "/targets/{entity_type}/{entity_id}",
    response_model=PaginatedActivityResponse,
)
def target_timeline(
    entity_type: EntityType,
    entity_id: str,
    filters: ActivityFilters = Depends(_filters),
    page: PageRequest = Depends(_page),
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """Activity recorded against any entity."""
    with _http_errors():
        return service.target_timeline(caller, entity_type, entity_id, filters, page)


# --- Admin endpoints ---

@router.get("/admin/recent", response_model=PaginatedActivityResponse)
def recent_activity(
    actor_id: str | None = Query(None, alias="actorId"),
    filters: ActivityFilters = Depends(_filters),
    page: PageRequest = Depends(_page),
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """Newest activity across all actors."""
    with _http_errors():
        return service.recent_activity(caller, filters, page, actor_id=actor_id)


@router.get("/admin/security", response_model=SecurityListingResponse)
def security_listing(
    min_risk_score: int | None = Query(None, alias="minRiskScore"),
    flagged: bool | None = None,
    page: PageRequest = Depends(_page),
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """
    Flagged or high-risk records, riskiest first.

    minRiskScore defaults to the configured threshold (70).
    """
    with _http_errors():
        return service.security_listing(caller, min_risk_score, flagged, page)


@router.get("/admin/export", response_model=ExportResponse)
def export_activity(
    export_format: ExportFormat = Query(ExportFormat.JSON, alias="format"),
    actor_id: str | None = Query(None, alias="actorId"),
    filters: ActivityFilters = Depends(_filters),
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """
    Export matching records as JSON or CSV.

    At most EXPORT_ROW_CAP rows are returned, newest first. CSV
    exports report the cap through X-Export-* headers.
    """
    with _http_errors():
        result = service.export(caller, filters, actor_id=actor_id)

    if export_format == ExportFormat.CSV:
        return Response(
            content=result.to_csv(),
            media_type="text/csv",
            headers={
                "Content-Disposition": 'attachment; filename="activity-export.csv"',
                "X-Export-Total": str(result.total),
                "X-Export-Truncated": str(result.truncated).lower(),
            },
        )
    return ExportResponse(
        items=result.rows,
        total=result.total,
        truncated=result.truncated,
    )


@router.post("/admin/{record_id}/flag", response_model=SecurityFlagResponse)
def flag_record(
    record_id: uuid.UUID,
    request: SecurityFlagRequest,
    caller: Caller = Depends(get_caller),
    scorer: RiskScorer = Depends(get_risk_scorer),
):
    """
    Mark a record as a security event.

    The score only ever goes up, and a flagged record is kept
    permanently.
    """
    if not caller.is_privileged:
        raise HTTPException(status_code=403, detail="Admin role required")
    with _http_errors():
        state = scorer.mark_security_event(
            record_id, request.reasons, request.risk_score
        )
    return SecurityFlagResponse(
        record_id=record_id,
        risk_score=state.risk_score,
        flagged=state.flagged,
        reasons=state.reasons,
        permanent=state.permanent,
    )


# Declared last so the fixed paths above take precedence
@router.get("/{record_id}", response_model=ActivityRecordResponse)
def get_record(
    record_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    service: ActivityQueryService = Depends(get_query_service),
):
    """A single record. Callers only see their own unless admin."""
    with _http_errors():
        return service.get_record(caller, record_id)
