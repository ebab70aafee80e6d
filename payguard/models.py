from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payguard.db import Base, JSONType


class EmployeeRole(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class ChangeType(str, enum.Enum):
    BANK_ACCOUNT = "BANK_ACCOUNT"
    ADDRESS = "ADDRESS"


class VerificationPath(str, enum.Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    OTP_REQUIRED = "OTP_REQUIRED"
    MANAGER_REQUIRED = "MANAGER_REQUIRED"
    BLOCK = "BLOCK"


class ChangeRequestStatus(str, enum.Enum):
    PENDING_OTP = "PENDING_OTP"
    PENDING_MANAGER = "PENDING_MANAGER"
    PENDING_MULTI_APPROVAL = "PENDING_MULTI_APPROVAL"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"


TERMINAL_CHANGE_STATUSES = frozenset(
    {
        ChangeRequestStatus.APPROVED,
        ChangeRequestStatus.DENIED,
        ChangeRequestStatus.EXPIRED,
    }
)
MANAGER_REVIEW_STATUSES = frozenset(
    {
        ChangeRequestStatus.PENDING_MANAGER,
        ChangeRequestStatus.PENDING_MULTI_APPROVAL,
    }
)


class AuditDecision(str, enum.Enum):
    ALLOW = "Allow"
    CHALLENGE = "Challenge"
    BLOCK = "Block"


class PayrollStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    HELD = "HELD"
    CANCELLED = "CANCELLED"


class PayrollCycleStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"


class FraudCaseStatus(str, enum.Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertSeverity(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    role: Mapped[EmployeeRole] = mapped_column(
        Enum(EmployeeRole, name="employee_role"),
        nullable=False,
        default=EmployeeRole.EMPLOYEE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    known_ips: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    known_device_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    baseline_routing_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    baseline_account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bank_routing_number: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    bank_account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bank_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    address_street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address_state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address_zip: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address_country: Mapped[str | None] = mapped_column(String(8), nullable=True)

    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    frozen_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    frozen_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    risk_events: Mapped[list[RiskEvent]] = relationship(back_populates="employee")
    change_requests: Mapped[list[ChangeRequest]] = relationship(
        back_populates="employee",
        foreign_keys="ChangeRequest.employee_id",
    )
    payrolls: Mapped[list[Payroll]] = relationship(back_populates="employee")

    @property
    def is_approver(self) -> bool:
        return self.role in {EmployeeRole.MANAGER, EmployeeRole.ADMIN}


class RiskEvent(Base):
    __tablename__ = "risk_events"
    __table_args__ = (Index("ix_risk_events_employee_created", "employee_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_codes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    geo: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    verdict: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    employee: Mapped[Employee] = relationship(back_populates="risk_events")


class ChangeRequest(Base):
    __tablename__ = "change_requests"
    __table_args__ = (Index("ix_change_requests_employee_status", "employee_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    change_type: Mapped[ChangeType] = mapped_column(Enum(ChangeType, name="change_type"), nullable=False)
    new_routing_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    new_address: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[ChangeRequestStatus] = mapped_column(
        Enum(ChangeRequestStatus, name="change_request_status"),
        nullable=False,
        index=True,
    )
    path: Mapped[VerificationPath] = mapped_column(
        Enum(VerificationPath, name="verification_path"),
        nullable=False,
    )
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    reason_codes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    risk_event_id: Mapped[int | None] = mapped_column(
        ForeignKey("risk_events.id", ondelete="SET NULL"),
        nullable=True,
    )
    source_ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source_device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    otp_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    otp_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    otp_failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    approvals: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    reviewed_by: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    employee: Mapped[Employee] = relationship(back_populates="change_requests", foreign_keys=[employee_id])
    risk_event: Mapped[RiskEvent | None] = relationship()


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("employee_id", "previous_hash", name="uq_audit_events_employee_previous_hash"),
        Index("ix_audit_events_employee_id_id", "employee_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    decision: Mapped[AuditDecision] = mapped_column(
        Enum(AuditDecision, name="audit_decision", values_callable=lambda items: [item.value for item in items]),
        nullable=False,
    )
    reason_codes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    device_fingerprint: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    ip: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    current_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PayrollCycle(Base):
    __tablename__ = "payroll_cycles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cycle_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    status: Mapped[PayrollCycleStatus] = mapped_column(
        Enum(PayrollCycleStatus, name="payroll_cycle_status"),
        nullable=False,
        default=PayrollCycleStatus.RUNNING,
    )
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pay_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    default_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    held_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    failed_employee_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False, default="manual")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Payroll(Base):
    __tablename__ = "payrolls"
    __table_args__ = (UniqueConstraint("employee_id", "cycle_id", name="uq_payrolls_employee_cycle"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    cycle_id: Mapped[str] = mapped_column(
        ForeignKey("payroll_cycles.cycle_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    paid_to_routing_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    paid_to_account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_to_bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    pay_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pay_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pay_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[PayrollStatus] = mapped_column(
        Enum(PayrollStatus, name="payroll_status"),
        nullable=False,
        default=PayrollStatus.PENDING,
        index=True,
    )
    hold_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    risk_score_at_processing: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    flagged_change_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    released_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    employee: Mapped[Employee] = relationship(back_populates="payrolls")


class FraudCase(Base):
    __tablename__ = "fraud_cases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[FraudCaseStatus] = mapped_column(
        Enum(FraudCaseStatus, name="fraud_case_status"),
        nullable=False,
        default=FraudCaseStatus.OPEN,
        index=True,
    )
    severity: Mapped[Severity] = mapped_column(Enum(Severity, name="fraud_case_severity"), nullable=False)
    case_type: Mapped[str] = mapped_column(String(64), nullable=False, default="OTHER")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    linked_change_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    linked_risk_event_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    timeline: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    alert_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    severity: Mapped[AlertSeverity] = mapped_column(Enum(AlertSeverity, name="alert_severity"), nullable=False)
    employee_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    linked_case_id: Mapped[int | None] = mapped_column(
        ForeignKey("fraud_cases.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ImmutableRecordError(RuntimeError):
    pass


def _reject_mutation(_mapper, _connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(f"{type(target).__name__} rows are append-only.")


for _immutable_model in (RiskEvent, AuditEvent):
    event.listen(_immutable_model, "before_update", _reject_mutation)
    event.listen(_immutable_model, "before_delete", _reject_mutation)
