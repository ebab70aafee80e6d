from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import case, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payguard.audit import append_audit_event
from payguard.clock import ensure_utc, utc_now
from payguard.errors import NotFoundError, StateConflictError, ValidationError
from payguard.models import (
    MANAGER_REVIEW_STATUSES,
    AuditDecision,
    ChangeRequest,
    ChangeRequestStatus,
    ChangeType,
    Employee,
    Payroll,
    PayrollCycle,
    PayrollCycleStatus,
    PayrollStatus,
)
from payguard.services.notifications import Notifier, safe_notify
from payguard.services.signals import count_high_risk_events
from payguard.settings import get_local_timezone, get_payroll_run_days, get_settings

logger = logging.getLogger("payguard.payroll")

COOLING_OFF_WINDOW = timedelta(hours=24)
COOLING_OFF_SCORE = 60
BURST_WINDOW = timedelta(hours=1)
BURST_EVENTS = 3
BANK_CHANGE_ACTION = f"{ChangeType.BANK_ACCOUNT.value}_CHANGE_ATTEMPT"


@dataclass(frozen=True, slots=True)
class PayrollDecision:
    status: PayrollStatus
    hold_reason: str = ""
    risk_score: int = 0
    flagged_change_request_id: int | None = None


@dataclass(frozen=True, slots=True)
class PayrollRecordSummary:
    employee_id: int
    employee_name: str
    payroll_id: int
    status: PayrollStatus
    hold_reason: str


@dataclass(frozen=True, slots=True)
class CycleResult:
    cycle_id: str
    skipped: bool
    status: PayrollCycleStatus | None = None
    paid: int = 0
    held: int = 0
    failed: int = 0
    failed_employee_ids: list[int] = field(default_factory=list)
    records: list[PayrollRecordSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "skipped": self.skipped,
            "status": self.status.value if self.status is not None else None,
            "paid": self.paid,
            "held": self.held,
            "failed": self.failed,
            "failed_employee_ids": list(self.failed_employee_ids),
            "records": [
                {
                    "employee_id": item.employee_id,
                    "employee_name": item.employee_name,
                    "payroll_id": item.payroll_id,
                    "status": item.status.value,
                    "hold_reason": item.hold_reason,
                }
                for item in self.records
            ],
        }


def _normalize_amount(value: Decimal | float | int | str) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Payroll amount is invalid.") from exc
    if amount <= 0:
        raise ValidationError("Payroll amount must be positive.")
    return amount


def decide_payroll_status(db: Session, employee: Employee, *, now_utc: datetime) -> PayrollDecision:
    """Apply the hold rules in order; the first match wins."""
    pending_request = db.scalar(
        select(ChangeRequest)
        .where(
            ChangeRequest.employee_id == employee.id,
            ChangeRequest.status.in_(list(MANAGER_REVIEW_STATUSES)),
        )
        .order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())
        .limit(1)
    )
    if pending_request is not None:
        return PayrollDecision(
            status=PayrollStatus.HELD,
            hold_reason="Payroll held: a high-risk account change is awaiting manager approval.",
            risk_score=pending_request.risk_score,
            flagged_change_request_id=pending_request.id,
        )

    recent_high_risk = db.scalar(
        select(ChangeRequest)
        .where(
            ChangeRequest.employee_id == employee.id,
            ChangeRequest.status == ChangeRequestStatus.APPROVED,
            ChangeRequest.risk_score > COOLING_OFF_SCORE,
            ChangeRequest.resolved_at >= now_utc - COOLING_OFF_WINDOW,
        )
        .order_by(ChangeRequest.resolved_at.desc(), ChangeRequest.id.desc())
        .limit(1)
    )
    if recent_high_risk is not None:
        return PayrollDecision(
            status=PayrollStatus.HELD,
            hold_reason=(
                "Payroll held: account details were recently changed with a high risk score "
                f"({recent_high_risk.risk_score}). 24-hour cooling-off applied."
            ),
            risk_score=recent_high_risk.risk_score,
            flagged_change_request_id=recent_high_risk.id,
        )

    burst_events = count_high_risk_events(
        db,
        employee.id,
        now_utc=now_utc,
        window=BURST_WINDOW,
        action=BANK_CHANGE_ACTION,
    )
    if burst_events >= BURST_EVENTS:
        return PayrollDecision(
            status=PayrollStatus.HELD,
            hold_reason=f"Payroll held: {burst_events} high-risk bank change attempts detected in the last hour.",
        )

    return PayrollDecision(status=PayrollStatus.PAID)


def _process_employees(
    db: Session,
    cycle: PayrollCycle,
    employees: Sequence[Employee],
    *,
    now_utc: datetime,
) -> tuple[list[PayrollRecordSummary], list[int]]:
    records: list[PayrollRecordSummary] = []
    failed_employee_ids: list[int] = []

    for employee in employees:
        try:
            with db.begin_nested():
                decision = decide_payroll_status(db, employee, now_utc=now_utc)
                payroll = Payroll(
                    employee_id=employee.id,
                    cycle_id=cycle.cycle_id,
                    paid_to_routing_number=employee.bank_routing_number,
                    paid_to_account_number=employee.bank_account_number,
                    paid_to_bank_name=employee.bank_name,
                    amount=cycle.default_amount,
                    pay_period_start=cycle.period_start,
                    pay_period_end=cycle.period_end,
                    pay_date=cycle.pay_date,
                    status=decision.status,
                    hold_reason=decision.hold_reason,
                    risk_score_at_processing=decision.risk_score,
                    flagged_change_request_id=decision.flagged_change_request_id,
                    created_at=now_utc,
                )
                db.add(payroll)
                db.flush()
        except Exception:
            logger.exception(
                "payroll_employee_failed",
                extra={"cycle_id": cycle.cycle_id, "employee_id": employee.id},
            )
            failed_employee_ids.append(employee.id)
            continue

        records.append(
            PayrollRecordSummary(
                employee_id=employee.id,
                employee_name=employee.full_name,
                payroll_id=payroll.id,
                status=decision.status,
                hold_reason=decision.hold_reason,
            )
        )
    return records, failed_employee_ids


def _count_cycle_rows(db: Session, cycle_id: str) -> tuple[int, int]:
    row = db.execute(
        select(
            func.coalesce(func.sum(case((Payroll.status == PayrollStatus.PAID, 1), else_=0)), 0),
            func.coalesce(func.sum(case((Payroll.status == PayrollStatus.HELD, 1), else_=0)), 0),
        ).where(Payroll.cycle_id == cycle_id)
    ).one()
    return int(row[0]), int(row[1])


def _finish_cycle(
    db: Session,
    cycle: PayrollCycle,
    *,
    records: list[PayrollRecordSummary],
    failed_employee_ids: list[int],
    now_utc: datetime,
    notifier: Notifier | None,
) -> CycleResult:
    paid, held = _count_cycle_rows(db, cycle.cycle_id)
    cycle.paid_count = paid
    cycle.held_count = held
    cycle.failed_count = len(failed_employee_ids)
    cycle.failed_employee_ids = list(failed_employee_ids)
    cycle.status = PayrollCycleStatus.PARTIAL if failed_employee_ids else PayrollCycleStatus.COMPLETED
    cycle.completed_at = now_utc
    db.commit()

    result = CycleResult(
        cycle_id=cycle.cycle_id,
        skipped=False,
        status=cycle.status,
        paid=sum(1 for item in records if item.status == PayrollStatus.PAID),
        held=sum(1 for item in records if item.status == PayrollStatus.HELD),
        failed=len(failed_employee_ids),
        failed_employee_ids=list(failed_employee_ids),
        records=records,
    )
    log_method = logger.warning if failed_employee_ids else logger.info
    log_method(
        "payroll_cycle_completed",
        extra={
            "cycle_id": cycle.cycle_id,
            "status": cycle.status.value,
            "paid": result.paid,
            "held": result.held,
            "failed": result.failed,
            "failed_employee_ids": result.failed_employee_ids,
        },
    )

    if notifier is not None:
        held_ids = {item.employee_id for item in records if item.status == PayrollStatus.HELD}
        for employee_id in sorted(held_ids):
            employee = db.get(Employee, employee_id)
            if employee is None:
                continue
            reason = next(item.hold_reason for item in records if item.employee_id == employee_id)
            safe_notify(
                notifier,
                employee=employee,
                kind="PAYROLL_HELD",
                details={"cycle_id": cycle.cycle_id, "reason": reason},
            )
    return result


def run_payroll_cycle(
    db: Session,
    *,
    cycle_id: str,
    period_start: datetime,
    period_end: datetime,
    default_amount: Decimal | float | int | str,
    pay_date: datetime | None = None,
    triggered_by: str = "manual",
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> CycleResult:
    """Produce one payroll row per active employee for ``cycle_id``.

    The cycle row is committed before any employee is touched; a second run
    with the same id hits the unique constraint and is reported as skipped.
    Employees are written one savepoint at a time so a single failure leaves
    the cycle PARTIAL instead of aborting it.
    """
    now = ensure_utc(now_utc or utc_now())
    normalized_cycle_id = (cycle_id or "").strip()
    if not normalized_cycle_id:
        raise ValidationError("Cycle id is required.")
    start = ensure_utc(period_start)
    end = ensure_utc(period_end)
    if start >= end:
        raise ValidationError("Pay period start must be before its end.")
    amount = _normalize_amount(default_amount)

    cycle = PayrollCycle(
        cycle_id=normalized_cycle_id,
        status=PayrollCycleStatus.RUNNING,
        period_start=start,
        period_end=end,
        pay_date=ensure_utc(pay_date) if pay_date is not None else now,
        default_amount=amount,
        paid_count=0,
        held_count=0,
        failed_count=0,
        failed_employee_ids=[],
        triggered_by=triggered_by,
        started_at=now,
    )
    db.add(cycle)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing_status = db.scalar(
            select(PayrollCycle.status).where(PayrollCycle.cycle_id == normalized_cycle_id)
        )
        logger.info(
            "payroll_cycle_skipped",
            extra={"cycle_id": normalized_cycle_id, "triggered_by": triggered_by},
        )
        return CycleResult(cycle_id=normalized_cycle_id, skipped=True, status=existing_status)

    logger.info(
        "payroll_cycle_started",
        extra={
            "cycle_id": cycle.cycle_id,
            "period_start": start.isoformat(),
            "period_end": end.isoformat(),
            "triggered_by": triggered_by,
        },
    )
    employees = list(
        db.scalars(select(Employee).where(Employee.is_active.is_(True)).order_by(Employee.id.asc())).all()
    )
    records, failed_employee_ids = _process_employees(db, cycle, employees, now_utc=now)
    return _finish_cycle(
        db,
        cycle,
        records=records,
        failed_employee_ids=failed_employee_ids,
        now_utc=now,
        notifier=notifier,
    )


def retry_payroll_cycle(
    db: Session,
    *,
    cycle_id: str,
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> CycleResult:
    """Process only the active employees that still have no row for ``cycle_id``."""
    now = ensure_utc(now_utc or utc_now())
    cycle = db.scalar(select(PayrollCycle).where(PayrollCycle.cycle_id == cycle_id).with_for_update())
    if cycle is None:
        raise NotFoundError("Payroll cycle not found.", code="PAYROLL_CYCLE_NOT_FOUND")
    if cycle.status == PayrollCycleStatus.COMPLETED:
        raise StateConflictError(
            f"Payroll cycle {cycle_id} is already complete.",
            code="PAYROLL_CYCLE_COMPLETE",
            current_status=cycle.status.value,
        )

    already_written = exists().where(Payroll.employee_id == Employee.id, Payroll.cycle_id == cycle.cycle_id)
    missing_employees = list(
        db.scalars(
            select(Employee)
            .where(Employee.is_active.is_(True), ~already_written)
            .order_by(Employee.id.asc())
        ).all()
    )
    logger.info(
        "payroll_cycle_retry_started",
        extra={"cycle_id": cycle.cycle_id, "missing_employee_count": len(missing_employees)},
    )
    records, failed_employee_ids = _process_employees(db, cycle, missing_employees, now_utc=now)
    return _finish_cycle(
        db,
        cycle,
        records=records,
        failed_employee_ids=failed_employee_ids,
        now_utc=now,
        notifier=notifier,
    )


def release_payroll(
    db: Session,
    *,
    payroll_id: int,
    released_by: int,
    note: str | None = None,
    now_utc: datetime | None = None,
) -> Payroll:
    now = ensure_utc(now_utc or utc_now())
    payroll = db.get(Payroll, payroll_id)
    if payroll is None:
        raise NotFoundError("Payroll record not found.", code="PAYROLL_NOT_FOUND")
    if payroll.status != PayrollStatus.HELD:
        raise StateConflictError(
            "Payroll is not currently held.",
            code="PAYROLL_NOT_HELD",
            current_status=payroll.status.value,
        )

    result = db.execute(
        update(Payroll)
        .where(Payroll.id == payroll.id, Payroll.status == PayrollStatus.HELD)
        .values(
            status=PayrollStatus.PAID,
            released_by=released_by,
            released_at=now,
            release_note=(note or "").strip() or "Manually released by manager/admin.",
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflictError("Payroll was released concurrently.", code="PAYROLL_NOT_HELD")

    append_audit_event(
        db,
        employee_id=payroll.employee_id,
        action="PAYROLL_RELEASED",
        decision=AuditDecision.ALLOW,
        reason_codes=[f"CYCLE_{payroll.cycle_id}"],
        now_utc=now,
    )
    db.commit()
    db.refresh(payroll)
    logger.info(
        "payroll_released",
        extra={"payroll_id": payroll.id, "cycle_id": payroll.cycle_id, "released_by": released_by},
    )
    return payroll


def list_payrolls(
    db: Session,
    *,
    cycle_id: str | None = None,
    status: PayrollStatus | None = None,
    employee_id: int | None = None,
    limit: int = 200,
) -> list[Payroll]:
    stmt = select(Payroll).order_by(Payroll.created_at.desc(), Payroll.id.desc())
    if cycle_id:
        stmt = stmt.where(Payroll.cycle_id == cycle_id)
    if status is not None:
        stmt = stmt.where(Payroll.status == status)
    if employee_id is not None:
        stmt = stmt.where(Payroll.employee_id == employee_id)
    return list(db.scalars(stmt.limit(max(1, min(limit, 1000)))).all())


def list_cycles(db: Session, *, limit: int = 50) -> list[PayrollCycle]:
    return list(
        db.scalars(
            select(PayrollCycle)
            .order_by(PayrollCycle.started_at.desc(), PayrollCycle.id.desc())
            .limit(max(1, min(limit, 500)))
        ).all()
    )


def get_payroll_stats(db: Session, *, recent_cycles: int = 5) -> dict[str, Any]:
    totals = dict(
        db.execute(select(Payroll.status, func.count(Payroll.id)).group_by(Payroll.status)).all()
    )
    cycles = list_cycles(db, limit=recent_cycles)
    return {
        "total": int(sum(totals.values())),
        "paid": int(totals.get(PayrollStatus.PAID, 0)),
        "held": int(totals.get(PayrollStatus.HELD, 0)),
        "pending": int(totals.get(PayrollStatus.PENDING, 0)),
        "recent_cycles": [
            {
                "cycle_id": cycle.cycle_id,
                "status": cycle.status.value,
                "paid": cycle.paid_count,
                "held": cycle.held_count,
                "failed": cycle.failed_count,
            }
            for cycle in cycles
        ],
    }


def scheduled_cycle_id(now_utc: datetime) -> str | None:
    """Return today's cycle id when a scheduled run is due, else None."""
    local_now = ensure_utc(now_utc).astimezone(get_local_timezone())
    if local_now.day not in get_payroll_run_days():
        return None
    if local_now.hour < get_settings().payroll_run_hour:
        return None
    return local_now.date().isoformat()


def run_scheduled_payroll(
    db: Session,
    *,
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> CycleResult | None:
    now = ensure_utc(now_utc or utc_now())
    cycle_id = scheduled_cycle_id(now)
    if cycle_id is None:
        return None
    if db.scalar(select(PayrollCycle.id).where(PayrollCycle.cycle_id == cycle_id)) is not None:
        return None

    settings = get_settings()
    return run_payroll_cycle(
        db,
        cycle_id=cycle_id,
        period_start=now - timedelta(days=max(1, settings.payroll_period_days)),
        period_end=now,
        default_amount=settings.payroll_default_amount,
        pay_date=now,
        triggered_by="scheduler",
        notifier=notifier,
        now_utc=now,
    )
