from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from payguard.audit import append_audit_event
from payguard.clock import utc_now
from payguard.errors import AccountFrozenError, NotFoundError, StateConflictError, ValidationError
from payguard.models import AlertSeverity, AuditDecision, ChangeType, Employee
from payguard.services.cases import create_alert
from payguard.services.notifications import Notifier, safe_notify
from payguard.services.signals import UNKNOWN_DEVICE_SENTINEL

logger = logging.getLogger("payguard.accounts")

ADDRESS_FIELDS = ("street", "city", "state", "zip", "country")
REQUIRED_ADDRESS_FIELDS = ("street", "city", "state", "zip")
DEFAULT_ADDRESS_COUNTRY = "US"


def get_employee(db: Session, employee_id: int, *, require_active: bool = True) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None or (require_active and not employee.is_active):
        raise NotFoundError("Employee not found.", code="EMPLOYEE_NOT_FOUND")
    return employee


def ensure_not_frozen(employee: Employee) -> None:
    if employee.is_frozen:
        raise AccountFrozenError(
            f"Account is frozen. Reason: {employee.frozen_reason or 'Contact security staff.'}"
        )


def normalize_address(raw: dict[str, Any] | None) -> dict[str, str]:
    if not raw:
        raise ValidationError("Address is required.")
    address = {key: str(raw.get(key) or "").strip() for key in ADDRESS_FIELDS}
    missing = [key for key in REQUIRED_ADDRESS_FIELDS if not address[key]]
    if missing:
        raise ValidationError(f"Address is missing: {', '.join(missing)}.")
    address["state"] = address["state"].upper()
    address["country"] = (address["country"] or DEFAULT_ADDRESS_COUNTRY).upper()
    return address


def normalize_bank_details(
    routing_number: str | None,
    account_number: str | None,
) -> tuple[str, str]:
    routing = "".join((routing_number or "").split())
    account = "".join((account_number or "").split())
    if not routing or not account:
        raise ValidationError("Routing number and account number are required.")
    if not routing.isdigit() or len(routing) != 9:
        raise ValidationError("Routing number must be 9 digits.")
    if not account.isdigit() or not 4 <= len(account) <= 17:
        raise ValidationError("Account number must be 4-17 digits.")
    return routing, account


def promote_trust(employee: Employee, *, ip: str | None, device_id: str | None) -> None:
    # JSON columns are reassigned, not mutated in place, so the ORM sees the change.
    normalized_ip = (ip or "").strip()
    if normalized_ip and normalized_ip not in (employee.known_ips or []):
        employee.known_ips = [*(employee.known_ips or []), normalized_ip]

    normalized_device = (device_id or "").strip()
    if (
        normalized_device
        and normalized_device.lower() != UNKNOWN_DEVICE_SENTINEL
        and normalized_device not in (employee.known_device_ids or [])
    ):
        employee.known_device_ids = [*(employee.known_device_ids or []), normalized_device]


def apply_account_change(
    employee: Employee,
    *,
    change_type: ChangeType,
    new_routing_number: str | None = None,
    new_account_number: str | None = None,
    new_bank_name: str | None = None,
    new_address: dict[str, Any] | None = None,
    now_utc: datetime | None = None,
) -> None:
    if change_type == ChangeType.BANK_ACCOUNT:
        employee.bank_routing_number = new_routing_number
        employee.bank_account_number = new_account_number
        employee.bank_name = new_bank_name
        employee.bank_updated_at = now_utc or utc_now()
        return

    address = dict(new_address or {})
    employee.address_street = address.get("street")
    employee.address_city = address.get("city")
    employee.address_state = address.get("state")
    employee.address_zip = address.get("zip")
    employee.address_country = address.get("country") or DEFAULT_ADDRESS_COUNTRY


def set_baseline(
    db: Session,
    *,
    employee_id: int,
    routing_number: str | None,
    account_number: str | None,
    bank_name: str | None,
    address: dict[str, Any] | None,
    ip: str | None,
    device_id: str | None,
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> Employee:
    """First-time onboarding: record bank and address without scoring.

    Allowed only while the employee has no bank account on file; afterwards
    every change goes through adjudication.
    """
    now = now_utc or utc_now()
    employee = get_employee(db, employee_id)
    ensure_not_frozen(employee)
    if employee.bank_account_number or employee.baseline_account_number:
        raise StateConflictError(
            "Baseline is already set. Use the standard change process.",
            code="BASELINE_ALREADY_SET",
        )

    routing, account = normalize_bank_details(routing_number, account_number)
    normalized_address = normalize_address(address)

    employee.baseline_routing_number = routing
    employee.baseline_account_number = account
    apply_account_change(
        employee,
        change_type=ChangeType.BANK_ACCOUNT,
        new_routing_number=routing,
        new_account_number=account,
        new_bank_name=(bank_name or "").strip() or None,
        now_utc=now,
    )
    apply_account_change(employee, change_type=ChangeType.ADDRESS, new_address=normalized_address)
    promote_trust(employee, ip=ip, device_id=device_id)

    append_audit_event(
        db,
        employee_id=employee.id,
        action="BASELINE_SET",
        decision=AuditDecision.ALLOW,
        device_fingerprint=device_id,
        ip=ip,
        now_utc=now,
    )
    db.commit()
    db.refresh(employee)

    logger.info("employee_baseline_set", extra={"employee_id": employee.id, "ip": ip, "device_id": device_id})
    if notifier is not None:
        safe_notify(
            notifier,
            employee=employee,
            kind="BASELINE_SET",
            details={"bank_name": employee.bank_name, "state": employee.address_state},
        )
    return employee


def freeze_employee(
    db: Session,
    *,
    employee_id: int,
    actor_id: int,
    reason: str | None = None,
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> Employee:
    now = now_utc or utc_now()
    employee = db.scalar(select(Employee).where(Employee.id == employee_id).with_for_update())
    if employee is None:
        raise NotFoundError("Employee not found.", code="EMPLOYEE_NOT_FOUND")
    if employee.is_frozen:
        raise StateConflictError("Account is already frozen.", code="ACCOUNT_ALREADY_FROZEN")

    employee.is_frozen = True
    employee.frozen_reason = (reason or "").strip() or "Account frozen by security staff."
    employee.frozen_at = now
    employee.frozen_by = actor_id
    append_audit_event(
        db,
        employee_id=employee.id,
        action="ACCOUNT_FROZEN",
        decision=AuditDecision.BLOCK,
        reason_codes=["STAFF_FREEZE"],
        now_utc=now,
    )
    db.commit()
    db.refresh(employee)

    logger.warning(
        "employee_frozen",
        extra={"employee_id": employee.id, "actor_id": actor_id, "reason": employee.frozen_reason},
    )
    if notifier is not None:
        safe_notify(notifier, employee=employee, kind="ACCOUNT_FROZEN", details={"reason": employee.frozen_reason})
    return employee


def unfreeze_employee(
    db: Session,
    *,
    employee_id: int,
    actor_id: int,
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> Employee:
    now = now_utc or utc_now()
    employee = db.scalar(select(Employee).where(Employee.id == employee_id).with_for_update())
    if employee is None:
        raise NotFoundError("Employee not found.", code="EMPLOYEE_NOT_FOUND")
    if not employee.is_frozen:
        raise StateConflictError("Account is not frozen.", code="ACCOUNT_NOT_FROZEN")

    employee.is_frozen = False
    employee.frozen_reason = None
    employee.frozen_at = None
    employee.frozen_by = None
    append_audit_event(
        db,
        employee_id=employee.id,
        action="ACCOUNT_UNFROZEN",
        decision=AuditDecision.ALLOW,
        reason_codes=["STAFF_UNFREEZE"],
        now_utc=now,
    )
    db.commit()
    db.refresh(employee)

    logger.info("employee_unfrozen", extra={"employee_id": employee.id, "actor_id": actor_id})
    if notifier is not None:
        safe_notify(notifier, employee=employee, kind="ACCOUNT_UNFROZEN", details={})
    return employee


def reset_bank_details(
    db: Session,
    *,
    employee_id: int,
    actor_id: int,
    routing_number: str | None,
    account_number: str | None,
    bank_name: str | None = None,
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> Employee:
    """Staff recovery after a takeover: restore bank details and drop learned trust.

    The employee's next IP and device are unknown again, so the following
    change attempt is challenged.
    """
    now = now_utc or utc_now()
    routing, account = normalize_bank_details(routing_number, account_number)
    employee = db.scalar(select(Employee).where(Employee.id == employee_id).with_for_update())
    if employee is None:
        raise NotFoundError("Employee not found.", code="EMPLOYEE_NOT_FOUND")

    apply_account_change(
        employee,
        change_type=ChangeType.BANK_ACCOUNT,
        new_routing_number=routing,
        new_account_number=account,
        new_bank_name=(bank_name or "").strip() or None,
        now_utc=now,
    )
    employee.known_ips = []
    employee.known_device_ids = []
    append_audit_event(
        db,
        employee_id=employee.id,
        action="BANK_DETAILS_RESET",
        decision=AuditDecision.ALLOW,
        reason_codes=["STAFF_BANK_RESET"],
        now_utc=now,
    )
    create_alert(
        db,
        alert_type="BANK_DETAILS_RESET",
        severity=AlertSeverity.WARNING,
        employee_id=employee.id,
        message=f"Bank details for {employee.full_name} were reset by security staff. Trust lists cleared.",
        details={"actor_id": actor_id, "bank_name": employee.bank_name},
        now_utc=now,
    )
    db.commit()
    db.refresh(employee)

    logger.warning("employee_bank_reset", extra={"employee_id": employee.id, "actor_id": actor_id})
    if notifier is not None:
        safe_notify(notifier, employee=employee, kind="BANK_DETAILS_RESET", details={"bank_name": employee.bank_name})
    return employee
