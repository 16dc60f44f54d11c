"""
Database models package.

All models must be imported here so that Alembic can discover
them through Base.metadata when generating migrations.
"""

from activity_audit.models.base import Base
from activity_audit.models.enums import (
    ActivityKind,
    ActivityStatus,
    EntityType,
    CallerRole,
    ExportFormat,
)
from activity_audit.models.activity_record import (
    ActivityRecord,
    VALID_TRANSITIONS,
    TERMINAL_STATUSES,
)

__all__ = [
    "Base",
    "ActivityKind",
    "ActivityStatus",
    "EntityType",
    "CallerRole",
    "ExportFormat",
    "ActivityRecord",
    "VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
]
