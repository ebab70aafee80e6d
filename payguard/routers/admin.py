from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from payguard.audit import verify_audit_chain
from payguard.clock import ensure_utc, utc_now
from payguard.db import get_db
from payguard.models import FraudCaseStatus, PayrollStatus, Severity
from payguard.schemas import (
    AlertRead,
    AuditChainVerifyResponse,
    BankResetRequest,
    ChangeDecisionRequest,
    ChangeDecisionResponse,
    ChangeRequestRead,
    EmployeeFreezeRequest,
    EmployeeRead,
    EmployeeSearchResultRead,
    FraudCaseRead,
    FraudCaseUpdateRequest,
    PayrollCycleRead,
    PayrollCycleRunRequest,
    PayrollCycleRunResponse,
    PayrollRead,
    PayrollReleaseRequest,
    PayrollStatsResponse,
    RiskStatsResponse,
    RiskSummaryRead,
)
from payguard.security import require_admin, require_approver
from payguard.services.accounts import freeze_employee, get_employee, reset_bank_details, unfreeze_employee
from payguard.services.adjudication import ChangeAdjudicator, get_adjudicator, list_pending_reviews
from payguard.services.cases import list_alerts, list_fraud_cases, mark_alert_read, update_fraud_case
from payguard.services.notifications import Notifier, get_notifier
from payguard.services.payroll import (
    get_payroll_stats,
    list_cycles,
    list_payrolls,
    release_payroll,
    retry_payroll_cycle,
    run_payroll_cycle,
)
from payguard.services.risk_overview import SEARCH_LIMIT, get_risk_stats, search_employees
from payguard.settings import get_local_timezone, get_settings

router = APIRouter(tags=["admin"])


@router.get("/api/admin/changes/pending", response_model=list[ChangeRequestRead])
def list_pending_changes(
    limit: int = Query(default=100, ge=1, le=500),
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> list[ChangeRequestRead]:
    return [ChangeRequestRead.model_validate(item) for item in list_pending_reviews(db, limit=limit)]


@router.post("/api/admin/changes/{change_request_id}/decision", response_model=ChangeDecisionResponse)
def decide_change(
    change_request_id: int,
    payload: ChangeDecisionRequest,
    claims: dict[str, Any] = Depends(require_approver),
    adjudicator: ChangeAdjudicator = Depends(get_adjudicator),
    db: Session = Depends(get_db),
) -> ChangeDecisionResponse:
    result = adjudicator.decide(
        db,
        change_request_id=change_request_id,
        approver_id=claims["employee_id"],
        approve=payload.decision == "approve",
        note=payload.note,
    )
    return ChangeDecisionResponse(
        change_request_id=result.change_request_id,
        status=result.status,
        approvals=result.approvals,
        required_approvals=result.required_approvals,
    )


@router.get("/api/admin/audit/{employee_id}/verify", response_model=AuditChainVerifyResponse)
def verify_employee_audit_chain(
    employee_id: int,
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> AuditChainVerifyResponse:
    get_employee(db, employee_id, require_active=False)
    return AuditChainVerifyResponse(**verify_audit_chain(db, employee_id).to_dict())


@router.get("/api/admin/risk/stats", response_model=RiskStatsResponse)
def risk_stats(
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> RiskStatsResponse:
    return RiskStatsResponse(**get_risk_stats(db))


@router.get("/api/admin/employees", response_model=list[EmployeeSearchResultRead])
def find_employees(
    q: str | None = Query(default=None, max_length=255),
    limit: int = Query(default=SEARCH_LIMIT, ge=1, le=SEARCH_LIMIT),
    _claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[EmployeeSearchResultRead]:
    return [
        EmployeeSearchResultRead(
            **EmployeeRead.model_validate(employee).model_dump(),
            risk_summary=RiskSummaryRead(**summary),
        )
        for employee, summary in search_employees(db, query=q, limit=limit)
    ]


@router.post("/api/admin/employees/{employee_id}/freeze", response_model=EmployeeRead)
def freeze_employee_account(
    employee_id: int,
    payload: EmployeeFreezeRequest,
    claims: dict[str, Any] = Depends(require_approver),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
) -> EmployeeRead:
    employee = freeze_employee(
        db,
        employee_id=employee_id,
        actor_id=claims["employee_id"],
        reason=payload.reason,
        notifier=notifier,
    )
    return EmployeeRead.model_validate(employee)


@router.post("/api/admin/employees/{employee_id}/unfreeze", response_model=EmployeeRead)
def unfreeze_employee_account(
    employee_id: int,
    claims: dict[str, Any] = Depends(require_approver),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
) -> EmployeeRead:
    employee = unfreeze_employee(db, employee_id=employee_id, actor_id=claims["employee_id"], notifier=notifier)
    return EmployeeRead.model_validate(employee)


@router.post("/api/admin/employees/{employee_id}/reset-bank", response_model=EmployeeRead)
def reset_employee_bank(
    employee_id: int,
    payload: BankResetRequest,
    claims: dict[str, Any] = Depends(require_admin),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
) -> EmployeeRead:
    employee = reset_bank_details(
        db,
        employee_id=employee_id,
        actor_id=claims["employee_id"],
        routing_number=payload.routing_number,
        account_number=payload.account_number,
        bank_name=payload.bank_name,
        notifier=notifier,
    )
    return EmployeeRead.model_validate(employee)


@router.post("/api/admin/payroll/cycles", response_model=PayrollCycleRunResponse)
def run_payroll(
    payload: PayrollCycleRunRequest,
    claims: dict[str, Any] = Depends(require_approver),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
) -> PayrollCycleRunResponse:
    settings = get_settings()
    now_utc = utc_now()
    pay_date = ensure_utc(payload.pay_date) if payload.pay_date else now_utc
    period_end = ensure_utc(payload.period_end) if payload.period_end else pay_date
    period_start = payload.period_start or period_end - timedelta(days=max(1, settings.payroll_period_days))
    cycle_id = payload.cycle_id or pay_date.astimezone(get_local_timezone()).date().isoformat()

    result = run_payroll_cycle(
        db,
        cycle_id=cycle_id,
        period_start=period_start,
        period_end=period_end,
        default_amount=payload.default_amount or settings.payroll_default_amount,
        pay_date=pay_date,
        triggered_by=f"employee:{claims['employee_id']}",
        notifier=notifier,
        now_utc=now_utc,
    )
    return PayrollCycleRunResponse(**result.to_dict())


@router.get("/api/admin/payroll/cycles", response_model=list[PayrollCycleRead])
def list_payroll_cycles(
    limit: int = Query(default=50, ge=1, le=500),
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> list[PayrollCycleRead]:
    return [PayrollCycleRead.model_validate(item) for item in list_cycles(db, limit=limit)]


@router.post("/api/admin/payroll/cycles/{cycle_id}/retry", response_model=PayrollCycleRunResponse)
def retry_payroll(
    cycle_id: str,
    _claims: dict[str, Any] = Depends(require_approver),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
) -> PayrollCycleRunResponse:
    result = retry_payroll_cycle(db, cycle_id=cycle_id, notifier=notifier)
    return PayrollCycleRunResponse(**result.to_dict())


@router.get("/api/admin/payroll/stats", response_model=PayrollStatsResponse)
def payroll_stats(
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> PayrollStatsResponse:
    return PayrollStatsResponse(**get_payroll_stats(db))


@router.get("/api/admin/payroll", response_model=list[PayrollRead])
def list_payroll_records(
    cycle_id: str | None = Query(default=None),
    status: PayrollStatus | None = Query(default=None),
    employee_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=200, ge=1, le=1000),
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> list[PayrollRead]:
    rows = list_payrolls(db, cycle_id=cycle_id, status=status, employee_id=employee_id, limit=limit)
    return [PayrollRead.model_validate(item) for item in rows]


@router.post("/api/admin/payroll/{payroll_id}/release", response_model=PayrollRead)
def release_held_payroll(
    payroll_id: int,
    payload: PayrollReleaseRequest,
    claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> PayrollRead:
    payroll = release_payroll(db, payroll_id=payroll_id, released_by=claims["employee_id"], note=payload.note)
    return PayrollRead.model_validate(payroll)


@router.get("/api/admin/cases", response_model=list[FraudCaseRead])
def list_cases(
    status: FraudCaseStatus | None = Query(default=None),
    severity: Severity | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> list[FraudCaseRead]:
    rows = list_fraud_cases(db, status=status, severity=severity, limit=limit)
    return [FraudCaseRead.model_validate(item) for item in rows]


@router.patch("/api/admin/cases/{case_id}", response_model=FraudCaseRead)
def update_case(
    case_id: int,
    payload: FraudCaseUpdateRequest,
    claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> FraudCaseRead:
    fraud_case = update_fraud_case(
        db,
        case_id=case_id,
        performed_by=str(claims["employee_id"]),
        status=payload.status,
        note=payload.note,
    )
    return FraudCaseRead.model_validate(fraud_case)


@router.get("/api/admin/alerts", response_model=list[AlertRead])
def list_security_alerts(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> list[AlertRead]:
    return [AlertRead.model_validate(item) for item in list_alerts(db, unread_only=unread_only, limit=limit)]


@router.post("/api/admin/alerts/{alert_id}/read", response_model=AlertRead)
def read_security_alert(
    alert_id: int,
    _claims: dict[str, Any] = Depends(require_approver),
    db: Session = Depends(get_db),
) -> AlertRead:
    return AlertRead.model_validate(mark_alert_read(db, alert_id=alert_id))
