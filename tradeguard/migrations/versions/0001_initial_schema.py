"""Initial approval engine schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

This migration:
1. Creates users, approval_chains, approval_requests, approval_guards and audit_logs
2. Adds the partial unique index allowing one open request per entity
3. Creates database triggers to enforce audit log immutability (prevent UPDATE/DELETE)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_STATUS_PREDICATE = "status IN ('pending', 'escalated')"


def upgrade() -> None:
    """Create approval engine tables."""

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("role", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "approval_chains",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("operation_type", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_approvers", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("require_all_approvers", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approver_roles", sa.JSON(), nullable=False),
        sa.Column("amount_threshold", sa.Numeric(12, 2), nullable=True),
        sa.Column("role_restrictions", sa.JSON(), nullable=False),
        sa.Column("conditions_json", sa.JSON(), nullable=True),
        sa.Column("auto_approve_after_hours", sa.Integer(), nullable=True),
        sa.Column("escalate_after_hours", sa.Integer(), nullable=True),
        sa.Column(
            "escalation_chain_id",
            sa.Uuid(),
            sa.ForeignKey("approval_chains.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("min_approvers >= 1", name="ck_approval_chains_min_approvers"),
    )
    op.create_index("ix_approval_chains_operation_type", "approval_chains", ["operation_type"])
    op.create_index("ix_approval_chains_priority", "approval_chains", ["priority"])
    op.create_index("ix_approval_chains_is_active", "approval_chains", ["is_active"])
    op.create_index("ix_approval_chains_operation_active", "approval_chains", ["operation_type", "is_active"])

    op.create_table(
        "approval_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("request_number", sa.String(40), nullable=False, unique=True),
        sa.Column("operation_type", sa.String(50), nullable=False),
        sa.Column("chain_id", sa.Uuid(), sa.ForeignKey("approval_chains.id"), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("request_data", sa.JSON(), nullable=False),
        sa.Column("business_context", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("total_required_approvals", sa.Integer(), nullable=False),
        sa.Column("current_approvals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_approver_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("requested_at", sa.DateTime(), nullable=False),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("escalated_at", sa.DateTime(), nullable=True),
        sa.Column("auto_approval_at", sa.DateTime(), nullable=True),
        sa.Column("requested_by", sa.String(64), nullable=False),
        sa.Column("requester_role", sa.String(50), nullable=True),
        sa.Column("final_approved_by", sa.String(64), nullable=True),
        sa.Column("final_rejected_by", sa.String(64), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("approval_history", sa.JSON(), nullable=False),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.Column("is_consumed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consumed_at", sa.DateTime(), nullable=True),
        sa.Column("consumed_by", sa.String(64), nullable=True),
        sa.Column("consumed_operation_id", sa.String(100), nullable=True),
        sa.Column("operation_checksum", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "current_approvals >= 0 AND current_approvals <= total_required_approvals",
            name="ck_approval_requests_approval_count",
        ),
    )
    op.create_index("ix_approval_requests_operation_type", "approval_requests", ["operation_type"])
    op.create_index("ix_approval_requests_chain_id", "approval_requests", ["chain_id"])
    op.create_index("ix_approval_requests_status", "approval_requests", ["status"])
    op.create_index("ix_approval_requests_requested_at", "approval_requests", ["requested_at"])
    op.create_index("ix_approval_requests_requested_by", "approval_requests", ["requested_by"])
    op.create_index("ix_approval_requests_entity", "approval_requests", ["entity_type", "entity_id"])
    op.create_index(
        "uq_approval_requests_open_entity",
        "approval_requests",
        ["entity_type", "entity_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_STATUS_PREDICATE),
        sqlite_where=sa.text(OPEN_STATUS_PREDICATE),
    )

    op.create_table(
        "approval_guards",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("operation_type", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("amount_threshold", sa.Numeric(12, 2), nullable=True),
        sa.Column("role_exceptions", sa.JSON(), nullable=False),
        sa.Column("block_if_no_approver", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_emergency_override", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("emergency_override_roles", sa.JSON(), nullable=False),
        sa.Column("notify_on_bypass", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("audit_all_attempts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_approval_guards_is_enabled", "approval_guards", ["is_enabled"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        sa.Column("user_role", sa.String(50), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("session_id", sa.String(128), nullable=True),
        sa.Column("previous_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("business_context", sa.JSON(), nullable=True),
        sa.Column("risk_level", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("compliance_flags", sa.JSON(), nullable=False),
        sa.Column("source", sa.String(20), nullable=False, server_default="application"),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=True),
        sa.Column("parent_audit_id", sa.Uuid(), sa.ForeignKey("audit_logs.id"), nullable=True),
        sa.Column("checksum", sa.String(64), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("correlation_id", "sequence", name="uq_audit_logs_correlation_sequence"),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_risk_level", "audit_logs", ["risk_level"])
    op.create_index("ix_audit_logs_correlation_id", "audit_logs", ["correlation_id"])
    op.create_index("ix_audit_logs_timestamp", "audit_logs", ["timestamp"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])

    if op.get_bind().dialect.name != "postgresql":
        return

    # Create trigger function to prevent updates and deletes
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_audit_log_mutation()
        RETURNS TRIGGER AS $trigger$
        BEGIN
            RAISE EXCEPTION 'Audit logs are append-only; % rejected. Record ID: %', TG_OP, OLD.id;
        END;
        $trigger$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_prevent_update
        BEFORE UPDATE ON audit_logs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_audit_log_mutation();
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_prevent_delete
        BEFORE DELETE ON audit_logs
        FOR EACH ROW
        EXECUTE FUNCTION prevent_audit_log_mutation();
    """)


def downgrade() -> None:
    """Drop approval engine tables."""

    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS audit_logs_prevent_update ON audit_logs;")
        op.execute("DROP TRIGGER IF EXISTS audit_logs_prevent_delete ON audit_logs;")
        op.execute("DROP FUNCTION IF EXISTS prevent_audit_log_mutation();")

    op.drop_table("audit_logs")
    op.drop_table("approval_guards")
    op.drop_index("uq_approval_requests_open_entity", table_name="approval_requests")
    op.drop_table("approval_requests")
    op.drop_table("approval_chains")
    op.drop_table("users")
