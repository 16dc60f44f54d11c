"""create activity_records table

Revision ID: 0001_activity_records
Revises:
Create Date: 2026-10-17

"""

import sqlalchemy as sa
from alembic import op

revision = "0001_activity_records"
down_revision = None
branch_labels = None
depends_on = None

ACTIVITY_KINDS = (
    "ACCOUNT_CREATE",
    "ACCOUNT_AUTO_CREATE",
    "ACCOUNT_DELETE",
    "ACCOUNT_UPDATE",
    "ACCOUNT_VIEW",
    "ACCOUNT_BULK_DELETE",
    "USER_LOGIN",
    "USER_LOGIN_FAILURE",
    "USER_LOGOUT",
    "USER_REGISTER",
    "USER_UPDATE_PROFILE",
    "SYSTEM_BACKUP",
    "SYSTEM_MAINTENANCE",
    "DATA_EXPORT",
    "DATA_IMPORT",
)
STATUSES = ("PENDING", "SUCCESS", "FAILURE", "TIMEOUT")
# Enum member names are stored, not their values
ENTITY_TYPES = ("ACCOUNT", "USER", "PLATFORM", "NAME_DATA", "SYSTEM")


def upgrade() -> None:
    op.create_table(
        "activity_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "activity_kind",
            sa.Enum(*ACTIVITY_KINDS, name="activity_kind_enum", create_constraint=True),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(*STATUSES, name="activity_status_enum", create_constraint=True),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column(
            "target_entity_type",
            sa.Enum(*ENTITY_TYPES, name="entity_type_enum", create_constraint=True),
            nullable=True,
        ),
        sa.Column("target_entity_id", sa.String(64), nullable=True),
        sa.Column("target_entity_name", sa.String(255), nullable=True),
        sa.Column("target_platform", sa.String(50), nullable=True),
        sa.Column("source_address", sa.String(45), nullable=True),
        sa.Column("client_agent", sa.String(500), nullable=True),
        sa.Column("request_id", sa.String(100), nullable=True),
        sa.Column("session_id", sa.String(100), nullable=True),
        sa.Column("endpoint", sa.String(255), nullable=True),
        sa.Column("method", sa.String(10), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("before_state", sa.JSON(), nullable=True),
        sa.Column("after_state", sa.JSON(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        sa.Column("activity_metadata", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_detail", sa.JSON(), nullable=True),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("memory_mb", sa.Float(), nullable=True),
        sa.Column("cpu_pct", sa.Float(), nullable=True),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("security_reasons", sa.JSON(), nullable=False),
        sa.Column("security_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("permanent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "ix_activity_actor_occurred", "activity_records",
        ["actor_id", sa.text("occurred_at DESC")],
    )
    op.create_index(
        "ix_activity_kind_occurred", "activity_records",
        ["activity_kind", sa.text("occurred_at DESC")],
    )
    op.create_index(
        "ix_activity_status_occurred", "activity_records",
        ["status", sa.text("occurred_at DESC")],
    )
    op.create_index(
        "ix_activity_flagged_occurred", "activity_records",
        ["flagged", sa.text("occurred_at DESC")],
    )
    op.create_index(
        "ix_activity_risk_occurred", "activity_records",
        [sa.text("risk_score DESC"), sa.text("occurred_at DESC")],
    )
    op.create_index(
        "ix_activity_target_occurred", "activity_records",
        ["target_entity_type", "target_entity_id", sa.text("occurred_at DESC")],
    )
    op.create_index("ix_activity_expires_at", "activity_records", ["expires_at"])


def downgrade() -> None:
    op.drop_table("activity_records")
    for enum_name in ("entity_type_enum", "activity_status_enum", "activity_kind_enum"):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
