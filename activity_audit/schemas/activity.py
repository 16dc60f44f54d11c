"""
Pydantic schemas for activity records.

These define the contract with the tracked business code (what
an operation reports about itself) and with API clients (what a
record looks like on the way out). The storage shape is flat;
the API shape groups columns the way readers think about them.
"""

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from activity_audit.models.activity_record import ActivityRecord
from activity_audit.models.enums import ActivityKind, ActivityStatus, EntityType
from activity_audit.schemas.metadata import ActivityMetadata


# --- Inbound: what a tracked operation reports ---

class RequestContext(BaseModel):
    """Where a tracked operation came from."""
    source_address: str | None = Field(default=None, max_length=45)
    client_agent: str | None = Field(default=None, max_length=500)
    request_id: str | None = Field(default=None, max_length=100)
    session_id: str | None = Field(default=None, max_length=100)
    endpoint: str | None = Field(default=None, max_length=255)
    method: str | None = Field(default=None, max_length=10)


class TargetRef(BaseModel):
    """The entity an operation touched."""
    entity_type: EntityType
    entity_id: str | None = Field(default=None, max_length=64)
    entity_name: str | None = Field(default=None, max_length=255)
    platform: str | None = Field(default=None, max_length=50)


class OperationDescriptor(BaseModel):
    """
    Description of an about-to-run tracked operation.

    The identity collaborator supplies actor_id; the interceptor
    trusts it as given.
    """
    kind: ActivityKind
    actor_id: str = Field(min_length=1, max_length=64)
    request: RequestContext = Field(default_factory=RequestContext)
    target: TargetRef | None = None
    before_state: dict[str, Any] | None = None
    metadata: ActivityMetadata | None = None

    @model_validator(mode="after")
    def metadata_matches_kind(self) -> "OperationDescriptor":
        if self.metadata is not None and self.metadata.kind != self.kind.value:
            raise ValueError(
                f"metadata variant '{self.metadata.kind}' does not match "
                f"activity kind '{self.kind.value}'"
            )
        return self


# --- Outbound: what API clients see ---

class ApiModel(BaseModel):
    """
    Base for everything that crosses the HTTP boundary.

    Attributes are snake_case in Python and camelCase on the wire
    (totalPages, riskScore, ...). Either spelling is accepted on input.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Change(ApiModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class TargetView(ApiModel):
    entity_type: EntityType | None
    entity_id: str | None
    entity_name: str | None
    platform: str | None


class RequestContextView(ApiModel):
    source_address: str | None
    client_agent: str | None
    request_id: str | None
    session_id: str | None
    endpoint: str | None
    method: str | None
    occurred_at: datetime


class DetailsView(ApiModel):
    before_state: dict[str, Any] | None
    after_state: dict[str, Any] | None
    changes: list[Change]
    metadata: dict[str, Any] | None


class ErrorView(ApiModel):
    code: str | None
    message: str | None
    detail: Any = None


class PerformanceView(ApiModel):
    duration_ms: float | None
    memory_mb: float | None
    cpu_pct: float | None


class SecurityView(ApiModel):
    risk_score: int
    flagged: bool
    reasons: list[str]


class RetentionView(ApiModel):
    expires_at: datetime
    permanent: bool


class ActivityRecordResponse(ApiModel):
    id: uuid.UUID
    activity_kind: ActivityKind
    status: ActivityStatus
    actor_id: str
    target: TargetView | None
    request_context: RequestContextView
    details: DetailsView
    error: ErrorView | None
    performance: PerformanceView | None
    security: SecurityView
    retention: RetentionView
    completed_at: datetime | None

    @classmethod
    def from_record(cls, record: ActivityRecord) -> "ActivityRecordResponse":
        target = None
        if record.target_entity_type is not None or record.target_entity_id:
            target = TargetView(
                entity_type=record.target_entity_type,
                entity_id=record.target_entity_id,
                entity_name=record.target_entity_name,
                platform=record.target_platform,
            )

        error = None
        if record.status in (ActivityStatus.FAILURE, ActivityStatus.TIMEOUT):
            error = ErrorView(
                code=record.error_code,
                message=record.error_message,
                detail=record.error_detail,
            )

        performance = None
        if record.duration_ms is not None:
            performance = PerformanceView(
                duration_ms=record.duration_ms,
                memory_mb=record.memory_mb,
                cpu_pct=record.cpu_pct,
            )

        return cls(
            id=record.id,
            activity_kind=record.activity_kind,
            status=record.status,
            actor_id=record.actor_id,
            target=target,
            request_context=RequestContextView(
                source_address=record.source_address,
                client_agent=record.client_agent,
                request_id=record.request_id,
                session_id=record.session_id,
                endpoint=record.endpoint,
                method=record.method,
                occurred_at=record.occurred_at,
            ),
            details=DetailsView(
                before_state=record.before_state,
                after_state=record.after_state,
                changes=[Change(**c) for c in record.changes or []],
                metadata=record.activity_metadata,
            ),
            error=error,
            performance=performance,
            security=SecurityView(
                risk_score=record.risk_score,
                flagged=record.flagged,
                reasons=list(record.security_reasons or []),
            ),
            retention=RetentionView(
                expires_at=record.expires_at,
                permanent=record.permanent,
            ),
            completed_at=record.completed_at,
        )


class PaginatedActivityResponse(ApiModel):
    items: list[ActivityRecordResponse]
    total_pages: int
    current_page: int
    total: int
    has_next: bool
    has_prev: bool


# --- Statistics ---

class StatusCount(ApiModel):
    status: ActivityStatus
    count: int


class KindStatistics(ApiModel):
    activity_kind: ActivityKind
    total: int
    statuses: list[StatusCount]


class DailyTrend(ApiModel):
    day: date
    count: int
    success_count: int
    failure_count: int


class PlatformCount(ApiModel):
    platform: str
    count: int


class DurationSummary(ApiModel):
    avg_duration_ms: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0


class ErrorCount(ApiModel):
    message: str
    count: int


class StatisticsResponse(ApiModel):
    time_range: str
    total_activities: int = 0
    kind_stats: list[KindStatistics] = Field(default_factory=list)
    status_stats: list[StatusCount] = Field(default_factory=list)
    daily_trends: list[DailyTrend] = Field(default_factory=list)
    platform_stats: list[PlatformCount] = Field(default_factory=list)
    performance: DurationSummary = Field(default_factory=DurationSummary)
    error_summary: list[ErrorCount] = Field(default_factory=list)
    degraded: bool = False
    error: str | None = None


class SecurityListingResponse(PaginatedActivityResponse):
    degraded: bool = False
    error: str | None = None


# --- Operator actions ---

class SecurityFlagRequest(ApiModel):
    """Request to mark a record as a security event."""
    reasons: list[str] = Field(min_length=1)
    risk_score: int = Field(default=80, ge=0, le=100)


class ExportResponse(ApiModel):
    items: list[dict[str, Any]]
    total: int
    truncated: bool


class SecurityFlagResponse(ApiModel):
    record_id: uuid.UUID
    risk_score: int
    flagged: bool
    reasons: list[str]
    permanent: bool
