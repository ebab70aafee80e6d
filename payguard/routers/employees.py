from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from payguard.audit import list_audit_events
from payguard.db import get_db
from payguard.errors import ForbiddenError
from payguard.schemas import AuditTrailEventRead, AuditTrailResponse, PayrollRead
from payguard.security import APPROVER_ROLES, require_employee
from payguard.services.accounts import get_employee
from payguard.services.payroll import list_payrolls

router = APIRouter(tags=["employees"])


@router.get("/api/audit/{employee_id}", response_model=AuditTrailResponse)
def get_audit_trail(
    employee_id: int,
    claims: dict[str, Any] = Depends(require_employee),
    db: Session = Depends(get_db),
) -> AuditTrailResponse:
    # Employees read only their own trail; approvers read any.
    if employee_id != claims["employee_id"] and claims.get("role") not in APPROVER_ROLES:
        raise ForbiddenError()
    get_employee(db, employee_id, require_active=False)
    events = [AuditTrailEventRead.model_validate(item) for item in list_audit_events(db, employee_id)]
    return AuditTrailResponse(employee_id=employee_id, count=len(events), events=events)


@router.get("/api/payroll/my", response_model=list[PayrollRead])
def list_my_payroll(
    limit: int = Query(default=100, ge=1, le=500),
    claims: dict[str, Any] = Depends(require_employee),
    db: Session = Depends(get_db),
) -> list[PayrollRead]:
    rows = list_payrolls(db, employee_id=claims["employee_id"], limit=limit)
    return [PayrollRead.model_validate(item) for item in rows]
