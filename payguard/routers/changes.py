from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from payguard.db import get_db
from payguard.errors import ExpiredError, NotFoundError
from payguard.models import ChangeRequest
from payguard.schemas import (
    BaselineSetRequest,
    BehaviorPayload,
    ChangeEvaluateRequest,
    ChangeEvaluateResponse,
    CodeVerifyRequest,
    CodeVerifyResponse,
    EmployeeRead,
    ReceiptRead,
    ReceiptVerifyRequest,
    ReceiptVerifyResponse,
)
from payguard.security import APPROVER_ROLES, require_employee
from payguard.services.accounts import set_baseline
from payguard.services.adjudication import ChangeAdjudicator, get_adjudicator
from payguard.services.notifications import Notifier, get_notifier
from payguard.services.receipts import build_change_receipt, verify_change_receipt
from payguard.services.signals import ChangeContext

router = APIRouter(tags=["changes"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _device_id(request: Request, body_device_id: str | None) -> str | None:
    return (body_device_id or "").strip() or request.headers.get("x-device-id")


def _login_at(claims: dict[str, Any]) -> datetime | None:
    raw = claims.get("auth_time") or claims.get("iat")
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc)
    return None


@router.post("/api/changes/evaluate", response_model=ChangeEvaluateResponse)
def evaluate_change(
    payload: ChangeEvaluateRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_employee),
    adjudicator: ChangeAdjudicator = Depends(get_adjudicator),
    db: Session = Depends(get_db),
) -> ChangeEvaluateResponse:
    behavior = payload.behavior or BehaviorPayload()
    context = ChangeContext(
        change_type=payload.change_type,
        ip=_client_ip(request) or "",
        device_id=_device_id(request, payload.device_id) or "",
        new_routing_number=payload.bank.routing_number if payload.bank else None,
        new_account_number=payload.bank.account_number if payload.bank else None,
        new_bank_name=payload.bank.bank_name if payload.bank else None,
        new_address=payload.address.model_dump() if payload.address else {},
        login_at=_login_at(claims),
        clipboard_paste=behavior.clipboard_paste,
        direct_navigation=behavior.direct_navigation,
        session_duration_seconds=behavior.session_duration_seconds,
    )
    result = adjudicator.evaluate(db, employee_id=claims["employee_id"], context=context)
    return ChangeEvaluateResponse(
        score=result.score,
        codes=result.codes,
        path=result.path,
        verdict=result.verdict.value,
        risk_event_id=result.risk_event_id,
        change_request_id=result.change_request_id,
        status=result.status,
        applied=result.applied,
    )


@router.post("/api/changes/{change_request_id}/verify-code", response_model=CodeVerifyResponse)
def verify_change_code(
    change_request_id: int,
    payload: CodeVerifyRequest,
    claims: dict[str, Any] = Depends(require_employee),
    adjudicator: ChangeAdjudicator = Depends(get_adjudicator),
    db: Session = Depends(get_db),
) -> CodeVerifyResponse:
    result = adjudicator.verify_code(
        db,
        change_request_id=change_request_id,
        code=payload.code,
        employee_id=claims["employee_id"],
    )
    if result.reason == "EXPIRED":
        raise ExpiredError("Verification code has expired. Start the change again.")
    return CodeVerifyResponse(
        change_request_id=result.change_request_id,
        approved=result.approved,
        reason=result.reason,
        status=result.status,
        attempts_remaining=result.attempts_remaining,
    )


@router.get("/api/changes/{change_request_id}/receipt", response_model=ReceiptRead)
def get_change_receipt(
    change_request_id: int,
    claims: dict[str, Any] = Depends(require_employee),
    db: Session = Depends(get_db),
) -> ReceiptRead:
    change_request = db.get(ChangeRequest, change_request_id)
    if change_request is None:
        raise NotFoundError("Change request not found.", code="CHANGE_REQUEST_NOT_FOUND")
    if change_request.employee_id != claims["employee_id"] and claims.get("role") not in APPROVER_ROLES:
        raise NotFoundError("Change request not found.", code="CHANGE_REQUEST_NOT_FOUND")
    return ReceiptRead(**build_change_receipt(change_request).to_dict())


@router.post("/api/receipts/verify", response_model=ReceiptVerifyResponse)
def verify_receipt(
    payload: ReceiptVerifyRequest,
    claims: dict[str, Any] = Depends(require_employee),
    db: Session = Depends(get_db),
) -> ReceiptVerifyResponse:
    result = verify_change_receipt(
        db,
        change_id=payload.change_id,
        employee_id=payload.employee_id,
        status=payload.status,
        risk_score=payload.risk_score,
        created_at=payload.created_at,
        event_hash=payload.event_hash,
        chain_hash=payload.chain_hash,
        visible_to=None if claims.get("role") in APPROVER_ROLES else claims["employee_id"],
    )
    return ReceiptVerifyResponse(**result.to_dict())


@router.post("/api/me/baseline", response_model=EmployeeRead)
def set_my_baseline(
    payload: BaselineSetRequest,
    request: Request,
    claims: dict[str, Any] = Depends(require_employee),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db),
) -> EmployeeRead:
    employee = set_baseline(
        db,
        employee_id=claims["employee_id"],
        routing_number=payload.bank.routing_number,
        account_number=payload.bank.account_number,
        bank_name=payload.bank.bank_name,
        address=payload.address.model_dump(),
        ip=_client_ip(request),
        device_id=_device_id(request, payload.device_id),
        notifier=notifier,
    )
    return EmployeeRead.model_validate(employee)
