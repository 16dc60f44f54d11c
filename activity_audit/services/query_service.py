"""
Query and aggregation service: the read side of the audit trail.

Every read is scoped by the caller:
- Ordinary callers see their own records only
- Privileged callers may look at any actor, the security listing,
  the recent-activity feed and exports

Authorization is decided before the store is touched. Invalid
filters or pagination raise ValidationFailure, which the API maps
to 400. The statistics and security surfaces degrade to an empty
result with an error message when the store is unavailable.
"""

import csv
import io
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Select, and_, case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from activity_audit.clock import Clock, to_naive_utc, utc_now
from activity_audit.config import Settings, get_settings
from activity_audit.errors import AuthorizationFailure, RecordNotFound, ValidationFailure
from activity_audit.models.activity_record import ActivityRecord
from activity_audit.models.enums import (
    ActivityKind,
    ActivityStatus,
    CallerRole,
    EntityType,
)
from activity_audit.schemas.activity import (
    ActivityRecordResponse,
    DailyTrend,
    DurationSummary,
    ErrorCount,
    KindStatistics,
    PaginatedActivityResponse,
    PlatformCount,
    SecurityListingResponse,
    StatisticsResponse,
    StatusCount,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_TIME_RANGE_DAYS = 3650
TOP_ERRORS = 10
DEGRADED_MESSAGE = "Activity store unavailable"

_TIME_RANGE = re.compile(r"^(\d+)d$")

EXPORT_COLUMNS = (
    "id",
    "activity_kind",
    "status",
    "actor_id",
    "target_entity_type",
    "target_entity_id",
    "target_entity_name",
    "target_platform",
    "source_address",
    "endpoint",
    "method",
    "occurred_at",
    "completed_at",
    "duration_ms",
    "error_code",
    "error_message",
    "risk_score",
    "flagged",
    "security_reasons",
)


@dataclass(frozen=True)
class Caller:
    actor_id: str
    role: CallerRole = CallerRole.USER

    @property
    def is_privileged(self) -> bool:
        return self.role == CallerRole.ADMIN


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    limit: int = 20


@dataclass(frozen=True)
class ActivityFilters:
    activity_kind: ActivityKind | None = None
    status: ActivityStatus | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass
class ExportResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    truncated: bool = False

    def to_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for row in self.rows:
            writer.writerow({
                **row,
                "security_reasons": ";".join(row.get("security_reasons") or []),
            })
        return buffer.getvalue()


def parse_time_range(value: str) -> int:
    """Parse a window like "30d" into a number of days."""
    match = _TIME_RANGE.match(value or "")
    if not match:
        raise ValidationFailure(
            f"Invalid time range '{value}', expected a value like '30d'"
        )
    days = int(match.group(1))
    if not 1 <= days <= MAX_TIME_RANGE_DAYS:
        raise ValidationFailure(
            f"Time range must be between 1d and {MAX_TIME_RANGE_DAYS}d"
        )
    return days


def validate_page(page: PageRequest) -> None:
    if page.page < 1:
        raise ValidationFailure("page must be >= 1")
    if not 1 <= page.limit <= MAX_PAGE_SIZE:
        raise ValidationFailure(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def validate_filters(filters: ActivityFilters) -> None:
    start = to_naive_utc(filters.start_date)
    end = to_naive_utc(filters.end_date)
    if start is not None and end is not None and start > end:
        raise ValidationFailure("start_date must not be after end_date")


def export_row(record: ActivityRecord) -> dict[str, Any]:
    """Flat export shape of a record, JSON-safe."""
    return {
        "id": str(record.id),
        "activity_kind": record.activity_kind.value,
        "status": record.status.value,
        "actor_id": record.actor_id,
        "target_entity_type": (
            record.target_entity_type.value if record.target_entity_type else None
        ),
        "target_entity_id": record.target_entity_id,
        "target_entity_name": record.target_entity_name,
        "target_platform": record.target_platform,
        "source_address": record.source_address,
        "endpoint": record.endpoint,
        "method": record.method,
        "occurred_at": record.occurred_at.isoformat(),
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "duration_ms": record.duration_ms,
        "error_code": record.error_code,
        "error_message": record.error_message,
        "risk_score": record.risk_score,
        "flagged": record.flagged,
        "security_reasons": list(record.security_reasons or []),
    }


class ActivityQueryService:

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    # --- Helpers ---

    @staticmethod
    def _require_privileged(caller: Caller) -> None:
        if not caller.is_privileged:
            raise AuthorizationFailure(
                f"Actor {caller.actor_id} is not allowed to use this endpoint"
            )

    @staticmethod
    def _filter_conditions(filters: ActivityFilters) -> list:
        conditions = []
        if filters.activity_kind is not None:
            conditions.append(ActivityRecord.activity_kind == filters.activity_kind)
        if filters.status is not None:
            conditions.append(ActivityRecord.status == filters.status)
        if filters.start_date is not None:
            conditions.append(ActivityRecord.occurred_at >= to_naive_utc(filters.start_date))
        if filters.end_date is not None:
            conditions.append(ActivityRecord.occurred_at <= to_naive_utc(filters.end_date))
        return conditions

    def _paginate(
        self, stmt: Select, page: PageRequest, *order_by
    ) -> PaginatedActivityResponse:
        total = self.db.scalar(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        ) or 0
        records = self.db.execute(
            stmt.order_by(*order_by)
            .offset((page.page - 1) * page.limit)
            .limit(page.limit)
        ).scalars().all()

        total_pages = math.ceil(total / page.limit)
        return PaginatedActivityResponse(
            items=[ActivityRecordResponse.from_record(r) for r in records],
            total_pages=total_pages,
            current_page=page.page,
            total=total,
            has_next=page.page < total_pages,
            has_prev=page.page > 1,
        )

    def _newest_first(self, stmt: Select, page: PageRequest) -> PaginatedActivityResponse:
        return self._paginate(
            stmt, page,
            ActivityRecord.occurred_at.desc(), ActivityRecord.id.desc(),
        )

    # --- Timelines ---

    def user_timeline(
        self,
        caller: Caller,
        filters: ActivityFilters = ActivityFilters(),
        page: PageRequest = PageRequest(),
        actor_id: str | None = None,
    ) -> PaginatedActivityResponse:
        """
        Records for one actor, newest first.

        Defaults to the caller. Only privileged callers may name
        another actor.
        """
        actor_id = actor_id or caller.actor_id
        if actor_id != caller.actor_id:
            self._require_privileged(caller)
        validate_page(page)
        validate_filters(filters)

        stmt = select(ActivityRecord).where(
            ActivityRecord.actor_id == actor_id,
            *self._filter_conditions(filters),
        )
        return self._newest_first(stmt, page)

    def target_timeline(
        self,
        caller: Caller,
        entity_type: EntityType,
        entity_id: str,
        filters: ActivityFilters = ActivityFilters(),
        page: PageRequest = PageRequest(),
    ) -> PaginatedActivityResponse:
        """Records about one entity. Ordinary callers only see their own."""
        validate_page(page)
        validate_filters(filters)

        conditions = [
            ActivityRecord.target_entity_type == entity_type,
            ActivityRecord.target_entity_id == entity_id,
            *self._filter_conditions(filters),
        ]
        if not caller.is_privileged:
            conditions.append(ActivityRecord.actor_id == caller.actor_id)
        return self._newest_first(select(ActivityRecord).where(*conditions), page)

    def recent_activity(
        self,
        caller: Caller,
        filters: ActivityFilters = ActivityFilters(),
        page: PageRequest = PageRequest(),
        actor_id: str | None = None,
    ) -> PaginatedActivityResponse:
        """Newest records across all actors."""
        self._require_privileged(caller)
        validate_page(page)
        validate_filters(filters)

        conditions = self._filter_conditions(filters)
        if actor_id:
            conditions.append(ActivityRecord.actor_id == actor_id)
        return self._newest_first(select(ActivityRecord).where(*conditions), page)

    def get_record(self, caller: Caller, record_id: uuid.UUID) -> ActivityRecordResponse:
        record = self.db.get(ActivityRecord, record_id)
        # Other actors' records look the same as missing ones
        if record is None or (
            not caller.is_privileged and record.actor_id != caller.actor_id
        ):
            raise RecordNotFound(f"Activity record {record_id} not found")
        return ActivityRecordResponse.from_record(record)

    # --- Statistics ---

    def statistics(self, caller: Caller, time_range: str = "30d") -> StatisticsResponse:
        """
        Rollups over the trailing window.

        Scoped to the caller's own records unless privileged.
        """
        days = parse_time_range(time_range)
        conditions = [ActivityRecord.occurred_at >= self.clock() - timedelta(days=days)]
        if not caller.is_privileged:
            conditions.append(ActivityRecord.actor_id == caller.actor_id)

        try:
            return self._statistics(time_range, conditions)
        except SQLAlchemyError as e:
            logger.exception("Statistics query failed")
            self.db.rollback()
            return StatisticsResponse(
                time_range=time_range,
                degraded=True,
                error=f"{DEGRADED_MESSAGE}: {e.__class__.__name__}",
            )

    def _statistics(self, time_range: str, conditions: list) -> StatisticsResponse:
        # Kind x status counts, rolled up into both distributions
        rows = self.db.execute(
            select(
                ActivityRecord.activity_kind,
                ActivityRecord.status,
                func.count().label("count"),
            )
            .where(*conditions)
            .group_by(ActivityRecord.activity_kind, ActivityRecord.status)
        ).all()

        per_kind: dict[ActivityKind, list[StatusCount]] = {}
        per_status: dict[ActivityStatus, int] = {}
        for kind, status, count in rows:
            per_kind.setdefault(kind, []).append(StatusCount(status=status, count=count))
            per_status[status] = per_status.get(status, 0) + count

        kind_stats = sorted(
            (
                KindStatistics(
                    activity_kind=kind,
                    total=sum(s.count for s in statuses),
                    statuses=sorted(statuses, key=lambda s: -s.count),
                )
                for kind, statuses in per_kind.items()
            ),
            key=lambda k: (-k.total, k.activity_kind.value),
        )
        status_stats = sorted(
            (StatusCount(status=s, count=c) for s, c in per_status.items()),
            key=lambda s: -s.count,
        )

        day = func.date(ActivityRecord.occurred_at)
        daily_trends = [
            DailyTrend(day=d, count=count, success_count=ok or 0, failure_count=failed or 0)
            for d, count, ok, failed in self.db.execute(
                select(
                    day,
                    func.count(),
                    func.sum(case((ActivityRecord.status == ActivityStatus.SUCCESS, 1), else_=0)),
                    func.sum(case((ActivityRecord.status == ActivityStatus.FAILURE, 1), else_=0)),
                )
                .where(*conditions)
                .group_by(day)
                .order_by(day)
            ).all()
        ]

        platform_stats = [
            PlatformCount(platform=platform, count=count)
            for platform, count in self.db.execute(
                select(ActivityRecord.target_platform, func.count().label("count"))
                .where(*conditions, ActivityRecord.target_platform.is_not(None))
                .group_by(ActivityRecord.target_platform)
                .order_by(func.count().desc(), ActivityRecord.target_platform)
            ).all()
        ]

        avg_ms, min_ms, max_ms = self.db.execute(
            select(
                func.avg(ActivityRecord.duration_ms),
                func.min(ActivityRecord.duration_ms),
                func.max(ActivityRecord.duration_ms),
            ).where(*conditions, ActivityRecord.duration_ms.is_not(None))
        ).one()
        performance = DurationSummary(
            avg_duration_ms=round(float(avg_ms or 0), 3),
            min_duration_ms=float(min_ms or 0),
            max_duration_ms=float(max_ms or 0),
        )

        error_summary = [
            ErrorCount(message=message, count=count)
            for message, count in self.db.execute(
                select(ActivityRecord.error_message, func.count().label("count"))
                .where(
                    *conditions,
                    ActivityRecord.status == ActivityStatus.FAILURE,
                    ActivityRecord.error_message.is_not(None),
                )
                .group_by(ActivityRecord.error_message)
                .order_by(func.count().desc(), ActivityRecord.error_message)
                .limit(TOP_ERRORS)
            ).all()
        ]

        return StatisticsResponse(
            time_range=time_range,
            total_activities=sum(per_status.values()),
            kind_stats=kind_stats,
            status_stats=status_stats,
            daily_trends=daily_trends,
            platform_stats=platform_stats,
            performance=performance,
            error_summary=error_summary,
        )

    # --- Security review ---

    def security_listing(
        self,
        caller: Caller,
        min_risk_score: int | None = None,
        flagged: bool | None = None,
        page: PageRequest = PageRequest(),
    ) -> SecurityListingResponse:
        """
        Records worth a security review, riskiest first.

        Without a flagged filter a record qualifies by being flagged
        or by reaching min_risk_score. With one, it must match the
        flag and reach the score.
        """
        self._require_privileged(caller)
        validate_page(page)
        if min_risk_score is None:
            min_risk_score = self.settings.SECURITY_MIN_RISK_SCORE
        if not 0 <= min_risk_score <= 100:
            raise ValidationFailure("min_risk_score must be between 0 and 100")

        if flagged is None:
            condition = or_(
                ActivityRecord.flagged.is_(True),
                ActivityRecord.risk_score >= min_risk_score,
            )
        else:
            condition = and_(
                ActivityRecord.flagged.is_(flagged),
                ActivityRecord.risk_score >= min_risk_score,
            )

        try:
            result = self._paginate(
                select(ActivityRecord).where(condition),
                page,
                ActivityRecord.risk_score.desc(),
                ActivityRecord.occurred_at.desc(),
            )
        except SQLAlchemyError as e:
            logger.exception("Security listing query failed")
            self.db.rollback()
            return SecurityListingResponse(
                items=[],
                total_pages=0,
                current_page=page.page,
                total=0,
                has_next=False,
                has_prev=page.page > 1,
                degraded=True,
                error=f"{DEGRADED_MESSAGE}: {e.__class__.__name__}",
            )
        return SecurityListingResponse(**dict(result))

    # --- Export ---

    def export(
        self,
        caller: Caller,
        filters: ActivityFilters = ActivityFilters(),
        actor_id: str | None = None,
    ) -> ExportResult:
        """
        Matching records, newest first, capped at EXPORT_ROW_CAP rows.

        total is the number of matching records; truncated tells
        the reader the cap cut the export short.
        """
        self._require_privileged(caller)
        validate_filters(filters)

        conditions = self._filter_conditions(filters)
        if actor_id:
            conditions.append(ActivityRecord.actor_id == actor_id)

        cap = self.settings.EXPORT_ROW_CAP
        total = self.db.scalar(
            select(func.count(ActivityRecord.id)).where(*conditions)
        ) or 0
        records = self.db.execute(
            select(ActivityRecord)
            .where(*conditions)
            .order_by(ActivityRecord.occurred_at.desc(), ActivityRecord.id.desc())
            .limit(cap)
        ).scalars()
        rows = [export_row(r) for r in records]

        if total > cap:
            logger.info("Export truncated to %d of %d rows", cap, total)
        return ExportResult(rows=rows, total=total, truncated=total > cap)
