from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from payguard.models import (
    AlertSeverity,
    AuditDecision,
    ChangeRequestStatus,
    ChangeType,
    EmployeeRole,
    FraudCaseStatus,
    PayrollCycleStatus,
    PayrollStatus,
    Severity,
    VerificationPath,
)


class AddressPayload(BaseModel):
    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=255)
    state: str = Field(min_length=1, max_length=64)
    zip: str = Field(min_length=1, max_length=32)
    country: str = Field(default="US", min_length=2, max_length=8)


class BankDetailsPayload(BaseModel):
    routing_number: str = Field(min_length=1, max_length=32)
    account_number: str = Field(min_length=1, max_length=64)
    bank_name: str | None = Field(default=None, max_length=255)


class BehaviorPayload(BaseModel):
    clipboard_paste: bool = False
    direct_navigation: bool = False
    session_duration_seconds: int | None = Field(default=None, ge=0)


class ChangeEvaluateRequest(BaseModel):
    change_type: ChangeType
    device_id: str | None = Field(default=None, max_length=255)
    bank: BankDetailsPayload | None = None
    address: AddressPayload | None = None
    behavior: BehaviorPayload | None = None

    @model_validator(mode="after")
    def _require_change_payload(self) -> "ChangeEvaluateRequest":
        if self.change_type == ChangeType.BANK_ACCOUNT and self.bank is None:
            raise ValueError("bank details are required for BANK_ACCOUNT changes")
        if self.change_type == ChangeType.ADDRESS and self.address is None:
            raise ValueError("address is required for ADDRESS changes")
        return self


class ChangeEvaluateResponse(BaseModel):
    score: int
    codes: list[str]
    path: VerificationPath
    verdict: str
    risk_event_id: int
    change_request_id: int | None = None
    status: ChangeRequestStatus | None = None
    applied: bool


class CodeVerifyRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class CodeVerifyResponse(BaseModel):
    change_request_id: int
    approved: bool
    reason: str
    status: ChangeRequestStatus
    attempts_remaining: int | None = None


class ChangeDecisionRequest(BaseModel):
    decision: Literal["approve", "deny"]
    note: str | None = Field(default=None, max_length=2000)


class ChangeDecisionResponse(BaseModel):
    change_request_id: int
    status: ChangeRequestStatus
    approvals: list[int]
    required_approvals: int


class ChangeRequestRead(BaseModel):
    id: int
    employee_id: int
    change_type: ChangeType
    status: ChangeRequestStatus
    path: VerificationPath
    risk_score: int
    reason_codes: list[str]
    new_bank_name: str | None = None
    new_address: dict[str, Any] = Field(default_factory=dict)
    source_ip: str | None = None
    source_device_id: str | None = None
    otp_failed_attempts: int
    approvals: list[int]
    reviewed_by: int | None = None
    review_note: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReceiptRead(BaseModel):
    receipt_id: str
    change_id: int
    employee_id: int
    status: str
    risk_score: int
    created_at: str
    event_hash: str
    chain_hash: str
    previous_hash: str


class ReceiptVerifyRequest(BaseModel):
    change_id: int = Field(ge=1)
    employee_id: int = Field(ge=1)
    status: str = Field(min_length=1, max_length=64)
    risk_score: int = Field(ge=0, le=100)
    created_at: str = Field(min_length=1, max_length=64)
    event_hash: str = Field(min_length=64, max_length=64)
    chain_hash: str = Field(min_length=64, max_length=64)


class ReceiptVerifyResponse(BaseModel):
    change_id: int
    valid: bool
    reason: str
    mismatched_fields: list[str] = Field(default_factory=list)


class AuditEventRead(BaseModel):
    id: int
    action: str
    decision: str
    previous_hash: str
    current_hash: str
    created_at: str


class AuditChainVerifyResponse(BaseModel):
    employee_id: int
    intact: bool
    event_count: int
    broken_index: int | None = None
    broken_event: AuditEventRead | None = None
    reason: str | None = None


class BaselineSetRequest(BaseModel):
    bank: BankDetailsPayload
    address: AddressPayload
    device_id: str | None = Field(default=None, max_length=255)


class EmployeeRead(BaseModel):
    id: int
    full_name: str
    email: str
    role: EmployeeRole
    is_active: bool
    is_frozen: bool
    frozen_reason: str | None = None
    frozen_at: datetime | None = None
    bank_name: str | None = None
    bank_updated_at: datetime | None = None
    address_state: str | None = None
    address_country: str | None = None

    model_config = ConfigDict(from_attributes=True)


class EmployeeFreezeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class PayrollCycleRunRequest(BaseModel):
    cycle_id: str | None = Field(default=None, min_length=1, max_length=64)
    period_start: datetime | None = None
    period_end: datetime | None = None
    pay_date: datetime | None = None
    default_amount: Decimal | None = Field(default=None, gt=0)


class PayrollRecordSummaryRead(BaseModel):
    employee_id: int
    employee_name: str
    payroll_id: int
    status: PayrollStatus
    hold_reason: str


class PayrollCycleRunResponse(BaseModel):
    cycle_id: str
    skipped: bool
    status: PayrollCycleStatus | None = None
    paid: int
    held: int
    failed: int
    failed_employee_ids: list[int]
    records: list[PayrollRecordSummaryRead]


class PayrollRead(BaseModel):
    id: int
    employee_id: int
    cycle_id: str
    paid_to_routing_number: str | None = None
    paid_to_bank_name: str | None = None
    amount: Decimal
    pay_period_start: datetime
    pay_period_end: datetime
    pay_date: datetime
    status: PayrollStatus
    hold_reason: str
    risk_score_at_processing: int
    flagged_change_request_id: int | None = None
    released_by: int | None = None
    released_at: datetime | None = None
    release_note: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PayrollReleaseRequest(BaseModel):
    note: str | None = Field(default=None, max_length=2000)


class PayrollCycleRead(BaseModel):
    cycle_id: str
    status: PayrollCycleStatus
    period_start: datetime
    period_end: datetime
    pay_date: datetime
    default_amount: Decimal
    paid_count: int
    held_count: int
    failed_count: int
    failed_employee_ids: list[int]
    triggered_by: str
    started_at: datetime
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PayrollStatsResponse(BaseModel):
    total: int
    paid: int
    held: int
    pending: int
    recent_cycles: list[dict[str, Any]]


class FraudCaseRead(BaseModel):
    id: int
    employee_id: int
    status: FraudCaseStatus
    severity: Severity
    case_type: str
    title: str
    description: str
    linked_change_request_id: int | None = None
    linked_risk_event_ids: list[int]
    timeline: list[dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FraudCaseUpdateRequest(BaseModel):
    status: FraudCaseStatus | None = None
    note: str | None = Field(default=None, max_length=2000)


class AlertRead(BaseModel):
    id: int
    alert_type: str
    severity: AlertSeverity
    employee_id: int | None = None
    message: str
    details: dict[str, Any]
    is_read: bool
    linked_case_id: int | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditTrailEventRead(BaseModel):
    id: int
    action: str
    decision: AuditDecision
    reason_codes: list[str]
    device_fingerprint: str | None = None
    ip: str | None = None
    previous_hash: str
    current_hash: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditTrailResponse(BaseModel):
    employee_id: int
    count: int
    events: list[AuditTrailEventRead]


class TopRiskEmployeeRead(BaseModel):
    employee_id: int
    full_name: str
    email: str
    average_score: float
    event_count: int


class RiskStatsResponse(BaseModel):
    total_events: int
    high_risk_events: int
    pending_reviews: int
    approved_today: int
    top_risk: list[TopRiskEmployeeRead]


class BankResetRequest(BaseModel):
    routing_number: str = Field(min_length=1, max_length=32)
    account_number: str = Field(min_length=1, max_length=64)
    bank_name: str | None = Field(default=None, max_length=255)


class RiskSummaryRead(BaseModel):
    event_count: int
    high_risk_count: int
    held_payroll: int


class EmployeeSearchResultRead(EmployeeRead):
    risk_summary: RiskSummaryRead
