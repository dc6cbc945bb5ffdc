"""Initial schema — guardians, blind users, connections, audit log.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def upgrade() -> None:
    # ── Standalone tables (no FKs) ─────────────────────────────────────

    op.create_table(
        "audit_log",
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column("actor_id", sa.String(100), comment="Guardian ID, blind ID, or 'system'"),
        sa.Column("actor_role", sa.String(50), comment="guardian, blind_user, system"),
        sa.Column("data", postgresql.JSON(astext_type=sa.Text())),
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "guardians",
        sa.Column("guardian_id", sa.String(20), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, comment="Stored lower-case"),
        sa.Column("password_hash", sa.String(255), nullable=False, comment="PBKDF2-SHA256 iterations$salt$digest"),
        sa.Column("profile_completed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("phone", sa.String(20)),
        sa.Column("address", sa.String(500)),
        sa.Column("aadhaar_url", sa.String(1000)),
        sa.Column("pan_url", sa.String(1000)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("guardian_id"),
        sa.UniqueConstraint("email"),
    )

    # ── Tables with FKs ────────────────────────────────────────────────

    op.create_table(
        "blind_users",
        sa.Column("blind_id", sa.String(20), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("age", sa.Integer()),
        sa.Column("gender", sa.String(20)),
        sa.Column("phone", sa.String(20)),
        sa.Column("email", sa.String(255)),
        sa.Column("address", sa.String(500)),
        sa.Column("guardian_id", sa.String(20), sa.ForeignKey("guardians.guardian_id"), index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("blind_id"),
    )

    op.create_table(
        "connections",
        sa.Column("blind_id", sa.String(20), sa.ForeignKey("blind_users.blind_id"), nullable=False, index=True),
        sa.Column("guardian_id", sa.String(20), sa.ForeignKey("guardians.guardian_id"), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_connections_guardian_status", "connections", ["guardian_id", "status"])
    # At most one pending or accepted request per pair
    op.create_index(
        "uq_connections_active_pair",
        "connections",
        ["blind_id", "guardian_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'accepted')"),
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_index("uq_connections_active_pair", table_name="connections")
    op.drop_index("ix_connections_guardian_status", table_name="connections")
    op.drop_table("connections")
    op.drop_table("blind_users")
    op.drop_table("guardians")
    op.drop_table("audit_log")
