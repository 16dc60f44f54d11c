"""
Activity record model.

One row per tracked operation invocation. A record is written
PENDING before the operation runs and moved exactly once to a
terminal status afterwards. After that only the security and
retention columns may change.

The record has a state machine governing its status.
Invalid transitions are rejected by the record store.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean, DateTime, Float, Index, Integer, JSON, String, Text,
    Enum as SAEnum, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from activity_audit.models.base import Base
from activity_audit.models.enums import ActivityKind, ActivityStatus, EntityType


# Allowed status transitions; terminal statuses map to an empty set
VALID_TRANSITIONS: dict[ActivityStatus, set[ActivityStatus]] = {
    ActivityStatus.PENDING: {
        ActivityStatus.SUCCESS,
        ActivityStatus.FAILURE,
        ActivityStatus.TIMEOUT,
    },
    ActivityStatus.SUCCESS: set(),  # Terminal
    ActivityStatus.FAILURE: set(),  # Terminal
    ActivityStatus.TIMEOUT: set(),  # Terminal
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)


class ActivityRecord(Base):
    __tablename__ = "activity_records"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    activity_kind: Mapped[ActivityKind] = mapped_column(
        SAEnum(
            ActivityKind,
            name="activity_kind_enum",
            create_constraint=True,
        ),
        nullable=False,
    )
    status: Mapped[ActivityStatus] = mapped_column(
        SAEnum(
            ActivityStatus,
            name="activity_status_enum",
            create_constraint=True,
        ),
        nullable=False,
        default=ActivityStatus.PENDING,
    )
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Target entity (absent for e.g. failed creations)
    target_entity_type: Mapped[EntityType | None] = mapped_column(
        SAEnum(EntityType, name="entity_type_enum", create_constraint=True),
        nullable=True,
    )
    target_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_entity_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    target_platform: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Request context (occurred_at is fixed at creation)
    source_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    client_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Details (sanitized snapshots)
    before_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    changes: Mapped[list | None] = mapped_column(JSON, nullable=True)
    activity_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Error (FAILURE / TIMEOUT only)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_detail: Mapped[Any] = mapped_column(JSON, nullable=True)

    # Performance
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    memory_mb: Mapped[float | None] = mapped_column(Float, nullable=True)
    cpu_pct: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Security: the only group updated after finalization
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    security_reasons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # Bumped by every security merge; merges compare-and-swap on it
    security_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retention
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    permanent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def can_transition_to(self, new_status: ActivityStatus) -> bool:
        """Check if a status transition is valid."""
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return (
            f"<ActivityRecord {self.id} "
            f"{self.activity_kind.value} ({self.status.value})>"
        )


# Indexes for the query patterns served by the query service.
# Declared after the class so descending columns can be expressed.
Index(
    "ix_activity_actor_occurred",
    ActivityRecord.actor_id,
    ActivityRecord.occurred_at.desc(),
)
Index(
    "ix_activity_kind_occurred",
    ActivityRecord.activity_kind,
    ActivityRecord.occurred_at.desc(),
)
Index(
    "ix_activity_status_occurred",
    ActivityRecord.status,
    ActivityRecord.occurred_at.desc(),
)
Index(
    "ix_activity_flagged_occurred",
    ActivityRecord.flagged,
    ActivityRecord.occurred_at.desc(),
)
Index(
    "ix_activity_risk_occurred",
    ActivityRecord.risk_score.desc(),
    ActivityRecord.occurred_at.desc(),
)
Index(
    "ix_activity_target_occurred",
    ActivityRecord.target_entity_type,
    ActivityRecord.target_entity_id,
    ActivityRecord.occurred_at.desc(),
)
Index("ix_activity_expires_at", ActivityRecord.expires_at)
