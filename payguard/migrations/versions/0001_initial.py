"""Initial payguard schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

employee_role = postgresql.ENUM("EMPLOYEE", "MANAGER", "ADMIN", name="employee_role", create_type=False)
change_type = postgresql.ENUM("BANK_ACCOUNT", "ADDRESS", name="change_type", create_type=False)
verification_path = postgresql.ENUM(
    "AUTO_APPROVE",
    "OTP_REQUIRED",
    "MANAGER_REQUIRED",
    "BLOCK",
    name="verification_path",
    create_type=False,
)
change_request_status = postgresql.ENUM(
    "PENDING_OTP",
    "PENDING_MANAGER",
    "PENDING_MULTI_APPROVAL",
    "APPROVED",
    "DENIED",
    "EXPIRED",
    name="change_request_status",
    create_type=False,
)
audit_decision = postgresql.ENUM("Allow", "Challenge", "Block", name="audit_decision", create_type=False)
payroll_status = postgresql.ENUM("PENDING", "PAID", "HELD", "CANCELLED", name="payroll_status", create_type=False)
payroll_cycle_status = postgresql.ENUM(
    "RUNNING",
    "COMPLETED",
    "PARTIAL",
    name="payroll_cycle_status",
    create_type=False,
)
fraud_case_status = postgresql.ENUM(
    "OPEN",
    "INVESTIGATING",
    "RESOLVED",
    "CLOSED",
    name="fraud_case_status",
    create_type=False,
)
fraud_case_severity = postgresql.ENUM(
    "LOW",
    "MEDIUM",
    "HIGH",
    "CRITICAL",
    name="fraud_case_severity",
    create_type=False,
)
alert_severity = postgresql.ENUM("INFO", "WARNING", "CRITICAL", name="alert_severity", create_type=False)

ENUM_TYPES = (
    employee_role,
    change_type,
    verification_path,
    change_request_status,
    audit_decision,
    payroll_status,
    payroll_cycle_status,
    fraud_case_status,
    fraud_case_severity,
    alert_severity,
)


def _jsonb_column(name: str, default: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(astext_type=sa.Text()),
        nullable=False,
        server_default=sa.text(f"'{default}'::jsonb"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", employee_role, nullable=False, server_default=sa.text("'EMPLOYEE'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _jsonb_column("known_ips", "[]"),
        _jsonb_column("known_device_ids", "[]"),
        sa.Column("baseline_routing_number", sa.String(length=32), nullable=True),
        sa.Column("baseline_account_number", sa.String(length=64), nullable=True),
        sa.Column("bank_routing_number", sa.String(length=32), nullable=True),
        sa.Column("bank_account_number", sa.String(length=64), nullable=True),
        sa.Column("bank_name", sa.String(length=255), nullable=True),
        sa.Column("bank_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("address_street", sa.String(length=255), nullable=True),
        sa.Column("address_city", sa.String(length=255), nullable=True),
        sa.Column("address_state", sa.String(length=64), nullable=True),
        sa.Column("address_zip", sa.String(length=32), nullable=True),
        sa.Column("address_country", sa.String(length=8), nullable=True),
        sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("frozen_reason", sa.Text(), nullable=True),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("frozen_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_employees_email", "employees", ["email"], unique=True)
    op.create_index("ix_employees_bank_routing_number", "employees", ["bank_routing_number"], unique=False)

    op.create_table(
        "risk_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("risk_score", sa.Integer(), nullable=False),
        _jsonb_column("risk_codes", "[]"),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("device_id", sa.String(length=255), nullable=True),
        _jsonb_column("geo", "{}"),
        sa.Column("verdict", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_risk_events_employee_created", "risk_events", ["employee_id", "created_at"], unique=False)

    op.create_table(
        "change_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("change_type", change_type, nullable=False),
        sa.Column("new_routing_number", sa.String(length=32), nullable=True),
        sa.Column("new_account_number", sa.String(length=64), nullable=True),
        sa.Column("new_bank_name", sa.String(length=255), nullable=True),
        _jsonb_column("new_address", "{}"),
        sa.Column("status", change_request_status, nullable=False),
        sa.Column("path", verification_path, nullable=False),
        sa.Column("risk_score", sa.Integer(), nullable=False),
        _jsonb_column("reason_codes", "[]"),
        sa.Column("risk_event_id", sa.Integer(), nullable=True),
        sa.Column("source_ip", sa.String(length=128), nullable=True),
        sa.Column("source_device_id", sa.String(length=255), nullable=True),
        sa.Column("otp_hash", sa.String(length=255), nullable=True),
        sa.Column("otp_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("otp_failed_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _jsonb_column("approvals", "[]"),
        sa.Column("reviewed_by", sa.Integer(), nullable=True),
        sa.Column("review_note", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["risk_event_id"], ["risk_events.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["reviewed_by"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_change_requests_status", "change_requests", ["status"], unique=False)
    op.create_index(
        "ix_change_requests_employee_status",
        "change_requests",
        ["employee_id", "status"],
        unique=False,
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("decision", audit_decision, nullable=False),
        _jsonb_column("reason_codes", "[]"),
        sa.Column("device_fingerprint", sa.String(length=255), nullable=False, server_default=sa.text("''")),
        sa.Column("ip", sa.String(length=128), nullable=False, server_default=sa.text("''")),
        sa.Column("previous_hash", sa.String(length=64), nullable=False),
        sa.Column("current_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "previous_hash", name="uq_audit_events_employee_previous_hash"),
        sa.UniqueConstraint("current_hash", name="uq_audit_events_current_hash"),
    )
    op.create_index("ix_audit_events_employee_id_id", "audit_events", ["employee_id", "id"], unique=False)

    op.create_table(
        "payroll_cycles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("cycle_id", sa.String(length=64), nullable=False),
        sa.Column("status", payroll_cycle_status, nullable=False, server_default=sa.text("'RUNNING'")),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pay_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("default_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("paid_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("held_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _jsonb_column("failed_employee_ids", "[]"),
        sa.Column("triggered_by", sa.String(length=64), nullable=False, server_default=sa.text("'manual'")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payroll_cycles_cycle_id", "payroll_cycles", ["cycle_id"], unique=True)

    op.create_table(
        "payrolls",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("cycle_id", sa.String(length=64), nullable=False),
        sa.Column("paid_to_routing_number", sa.String(length=32), nullable=True),
        sa.Column("paid_to_account_number", sa.String(length=64), nullable=True),
        sa.Column("paid_to_bank_name", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("pay_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pay_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pay_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", payroll_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("hold_reason", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("risk_score_at_processing", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("flagged_change_request_id", sa.Integer(), nullable=True),
        sa.Column("released_by", sa.Integer(), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["cycle_id"], ["payroll_cycles.cycle_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["flagged_change_request_id"], ["change_requests.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_id", "cycle_id", name="uq_payrolls_employee_cycle"),
    )
    op.create_index("ix_payrolls_employee_id", "payrolls", ["employee_id"], unique=False)
    op.create_index("ix_payrolls_cycle_id", "payrolls", ["cycle_id"], unique=False)
    op.create_index("ix_payrolls_status", "payrolls", ["status"], unique=False)

    op.create_table(
        "fraud_cases",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("status", fraud_case_status, nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column("severity", fraud_case_severity, nullable=False),
        sa.Column("case_type", sa.String(length=64), nullable=False, server_default=sa.text("'OTHER'")),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("linked_change_request_id", sa.Integer(), nullable=True),
        _jsonb_column("linked_risk_event_ids", "[]"),
        _jsonb_column("timeline", "[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["linked_change_request_id"], ["change_requests.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_fraud_cases_employee_id", "fraud_cases", ["employee_id"], unique=False)
    op.create_index("ix_fraud_cases_status", "fraud_cases", ["status"], unique=False)

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("alert_type", sa.String(length=64), nullable=False),
        sa.Column("severity", alert_severity, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        _jsonb_column("details", "{}"),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("linked_case_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["linked_case_id"], ["fraud_cases.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_alerts_alert_type", "alerts", ["alert_type"], unique=False)
    op.create_index("ix_alerts_employee_id", "alerts", ["employee_id"], unique=False)


def downgrade() -> None:
    op.drop_table("alerts")
    op.drop_table("fraud_cases")
    op.drop_table("payrolls")
    op.drop_table("payroll_cycles")
    op.drop_table("audit_events")
    op.drop_table("change_requests")
    op.drop_table("risk_events")
    op.drop_index("ix_employees_bank_routing_number", table_name="employees")
    op.drop_index("ix_employees_email", table_name="employees")
    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)
