"""
Record store: every write to activity_records goes through here.

The store enforces the rules the rest of the pipeline relies on:
1. A record is created PENDING, with occurred_at and expires_at fixed
2. Finalization is a field-level update guarded by status = PENDING,
   so a record reaches a terminal status at most once
3. Security updates only ever raise the risk score and only ever
   add reasons, whatever order concurrent scorers commit in
   (compare-and-swap on security_version)
4. Expiry never touches permanent records

Each method opens its own short-lived session, because callers
run on request threads, finalizer threads and the reaper thread.
Database errors are re-raised as AuditWriteFailure so callers
can contain them without knowing about SQLAlchemy.
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, distinct, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from activity_audit.clock import Clock, utc_now
from activity_audit.config import Settings, get_settings
from activity_audit.errors import AuditWriteFailure
from activity_audit.models.activity_record import ActivityRecord
from activity_audit.models.enums import ActivityStatus
from activity_audit.schemas.activity import OperationDescriptor, TargetRef
from activity_audit.services.performance import PerformanceMetrics

logger = logging.getLogger(__name__)

MAX_MERGE_ATTEMPTS = 20


@dataclass
class Finalization:
    """Everything the post-phase writes onto a PENDING record."""
    status: ActivityStatus
    completed_at: datetime
    target: TargetRef | None = None
    after_state: dict | None = None
    changes: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_detail: Any = None
    performance: PerformanceMetrics | None = None


@dataclass(frozen=True)
class SecurityState:
    """Security fields of a record after a merge."""
    risk_score: int
    flagged: bool
    reasons: list[str]
    permanent: bool


class RecordStore:

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        if session_factory is None:
            from activity_audit.models.base import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock

    @contextmanager
    def _write_session(self):
        db: Session = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise AuditWriteFailure(str(e)) from e
        finally:
            db.close()

    @contextmanager
    def _read_session(self):
        db: Session = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            raise AuditWriteFailure(str(e)) from e
        finally:
            db.close()

    # --- Writes ---

    def create_pending(
        self,
        descriptor: OperationDescriptor,
        before_state: dict | None = None,
        metadata: dict | None = None,
    ) -> uuid.UUID:
        """
        Write the provisional record and return its id.

        This runs before the business operation, so the id exists
        even if the operation later takes the process down.
        """
        now = self.clock()
        record_id = uuid.uuid4()
        target = descriptor.target
        ctx = descriptor.request

        record = ActivityRecord(
            id=record_id,
            activity_kind=descriptor.kind,
            status=ActivityStatus.PENDING,
            actor_id=descriptor.actor_id,
            target_entity_type=target.entity_type if target else None,
            target_entity_id=target.entity_id if target else None,
            target_entity_name=target.entity_name if target else None,
            target_platform=target.platform if target else None,
            source_address=ctx.source_address,
            client_agent=ctx.client_agent,
            request_id=ctx.request_id,
            session_id=ctx.session_id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            occurred_at=now,
            before_state=before_state,
            changes=[],
            activity_metadata=metadata,
            risk_score=0,
            flagged=False,
            security_reasons=[],
            expires_at=now + timedelta(days=self.settings.RETENTION_DAYS),
            permanent=False,
        )
        with self._write_session() as db:
            db.add(record)
        return record_id

    def finalize(self, record_id: uuid.UUID, result: Finalization) -> bool:
        """
        Move a PENDING record to its terminal status.

        Returns False when the record was not PENDING any more
        (already finalized, swept to TIMEOUT, or deleted). Only the
        outcome columns are written; security columns are left to
        concurrent scorers.
        """
        if result.status == ActivityStatus.PENDING:
            raise ValueError("Cannot finalize a record to PENDING")

        values: dict[str, Any] = {
            "status": result.status,
            "completed_at": result.completed_at,
            "after_state": result.after_state,
            "changes": result.changes,
            "error_code": result.error_code,
            "error_message": result.error_message,
            "error_detail": result.error_detail,
        }
        if result.metadata is not None:
            values["activity_metadata"] = result.metadata
        if result.target is not None:
            values.update(
                target_entity_type=result.target.entity_type,
                target_entity_id=result.target.entity_id,
                target_entity_name=result.target.entity_name,
                target_platform=result.target.platform,
            )
        if result.performance is not None:
            values.update(
                duration_ms=result.performance.duration_ms,
                memory_mb=result.performance.memory_mb,
                cpu_pct=result.performance.cpu_pct,
            )

        with self._write_session() as db:
            outcome = db.execute(
                update(ActivityRecord)
                .where(
                    ActivityRecord.id == record_id,
                    ActivityRecord.status == ActivityStatus.PENDING,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        if outcome.rowcount != 1:
            logger.warning(
                "Activity record %s was not PENDING; finalization to %s skipped",
                record_id, result.status.value,
            )
            return False
        return True

    def merge_security(
        self,
        record_id: uuid.UUID,
        risk_score: int,
        reasons: list[str],
        force_flag: bool = False,
    ) -> SecurityState | None:
        """
        Merge a finding into a record's security fields.

        risk_score takes the max of stored and new, reasons are an
        ordered union, and flagged/permanent are only ever switched
        on: by reaching RISK_FLAG_THRESHOLD, or unconditionally when
        force_flag is set (operator actions).

        The write is a compare-and-swap on security_version. A merge
        that loses the race to a concurrent one re-reads the row and
        merges again, so no finding is overwritten whatever order the
        writers commit in. The row is also locked for the read where
        the database supports it, which keeps retries rare there.
        """
        risk_score = max(0, min(100, int(risk_score)))
        threshold = self.settings.RISK_FLAG_THRESHOLD

        for _ in range(MAX_MERGE_ATTEMPTS):
            with self._write_session() as db:
                row = db.execute(
                    select(
                        ActivityRecord.risk_score,
                        ActivityRecord.security_reasons,
                        ActivityRecord.flagged,
                        ActivityRecord.permanent,
                        ActivityRecord.security_version,
                    )
                    .where(ActivityRecord.id == record_id)
                    .with_for_update()
                ).one_or_none()
                if row is None:
                    return None

                merged_score = max(row.risk_score or 0, risk_score)
                merged_reasons = list(row.security_reasons or [])
                for reason in reasons:
                    if reason not in merged_reasons:
                        merged_reasons.append(reason)
                flagged = bool(row.flagged) or force_flag or merged_score >= threshold
                permanent = bool(row.permanent) or flagged

                swapped = db.execute(
                    update(ActivityRecord)
                    .where(
                        ActivityRecord.id == record_id,
                        ActivityRecord.security_version == row.security_version,
                    )
                    .values(
                        risk_score=merged_score,
                        security_reasons=merged_reasons,
                        flagged=flagged,
                        permanent=permanent,
                        security_version=row.security_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount == 1

            if swapped:
                break
            logger.debug("Security merge on %s lost a race; retrying", record_id)
        else:
            raise AuditWriteFailure(
                f"Security merge on {record_id} did not settle after "
                f"{MAX_MERGE_ATTEMPTS} attempts"
            )

        if flagged and not row.flagged:
            logger.warning(
                "Activity record %s flagged (risk_score=%d reasons=%s)",
                record_id, merged_score, merged_reasons,
            )
        return SecurityState(
            risk_score=merged_score,
            flagged=flagged,
            reasons=merged_reasons,
            permanent=permanent,
        )

    def timeout_stale_pending(self, older_than: datetime) -> int:
        """Mark records PENDING since before older_than as TIMEOUT."""
        now = self.clock()
        with self._write_session() as db:
            result = db.execute(
                update(ActivityRecord)
                .where(
                    ActivityRecord.status == ActivityStatus.PENDING,
                    ActivityRecord.occurred_at < older_than,
                )
                .values(
                    status=ActivityStatus.TIMEOUT,
                    completed_at=now,
                    error_code="PENDING_TIMEOUT",
                    error_message="Record was never finalized",
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    def delete_expired(self, now: datetime | None = None) -> int:
        """
        Delete records past expires_at that are not permanent.

        Safe to run repeatedly or concurrently: a second pass over
        the same state matches nothing.
        """
        now = now or self.clock()
        with self._write_session() as db:
            result = db.execute(
                delete(ActivityRecord)
                .where(
                    ActivityRecord.expires_at <= now,
                    ActivityRecord.permanent.is_(False),
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    # --- Reads used by the scorer ---

    def get(self, record_id: uuid.UUID) -> ActivityRecord | None:
        with self._read_session() as db:
            return db.get(ActivityRecord, record_id)

    def actor_window(
        self, actor_id: str, since: datetime, until: datetime
    ) -> list[ActivityRecord]:
        """Records for one actor with since <= occurred_at <= until, oldest first."""
        with self._read_session() as db:
            records = db.execute(
                select(ActivityRecord)
                .where(
                    ActivityRecord.actor_id == actor_id,
                    ActivityRecord.occurred_at >= since,
                    ActivityRecord.occurred_at <= until,
                )
                .order_by(ActivityRecord.occurred_at.asc())
            ).scalars().all()
            return list(records)

    def active_actors(self, since: datetime) -> list[str]:
        with self._read_session() as db:
            actors = db.execute(
                select(distinct(ActivityRecord.actor_id))
                .where(ActivityRecord.occurred_at >= since)
            ).scalars().all()
            return list(actors)
