from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from payguard.clock import ensure_utc, utc_now
from payguard.models import (
    MANAGER_REVIEW_STATUSES,
    ChangeRequest,
    ChangeRequestStatus,
    Employee,
    Payroll,
    PayrollStatus,
    RiskEvent,
)
from payguard.services.signals import HIGH_RISK_SCORE
from payguard.settings import get_local_timezone

TOP_RISK_LIMIT = 5
SEARCH_LIMIT = 20


def _start_of_local_day(now_utc: datetime, tz: ZoneInfo) -> datetime:
    local_day = ensure_utc(now_utc).astimezone(tz).date()
    return datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)


def _count(db: Session, stmt: Any) -> int:
    return int(db.scalar(stmt) or 0)


def get_risk_stats(
    db: Session,
    *,
    now_utc: datetime | None = None,
    tz: ZoneInfo | None = None,
    top_limit: int = TOP_RISK_LIMIT,
) -> dict[str, Any]:
    """Dashboard counters plus the employees with the highest average risk score.

    "Today" starts at local midnight in the configured timezone.
    """
    day_start = _start_of_local_day(now_utc or utc_now(), tz or get_local_timezone())

    average_score = func.avg(RiskEvent.risk_score)
    top_rows = db.execute(
        select(
            Employee.id,
            Employee.full_name,
            Employee.email,
            average_score.label("average_score"),
            func.count(RiskEvent.id).label("event_count"),
        )
        .select_from(RiskEvent)
        .join(Employee, Employee.id == RiskEvent.employee_id)
        .group_by(Employee.id, Employee.full_name, Employee.email)
        .order_by(average_score.desc(), Employee.id.asc())
        .limit(top_limit)
    ).all()

    return {
        "total_events": _count(db, select(func.count(RiskEvent.id))),
        "high_risk_events": _count(
            db, select(func.count(RiskEvent.id)).where(RiskEvent.risk_score > HIGH_RISK_SCORE)
        ),
        "pending_reviews": _count(
            db,
            select(func.count(ChangeRequest.id)).where(ChangeRequest.status.in_(MANAGER_REVIEW_STATUSES)),
        ),
        "approved_today": _count(
            db,
            select(func.count(ChangeRequest.id)).where(
                ChangeRequest.status == ChangeRequestStatus.APPROVED,
                ChangeRequest.resolved_at >= day_start,
            ),
        ),
        "top_risk": [
            {
                "employee_id": row.id,
                "full_name": row.full_name,
                "email": row.email,
                "average_score": round(float(row.average_score), 2),
                "event_count": int(row.event_count),
            }
            for row in top_rows
        ],
    }


def risk_summary(db: Session, employee_id: int) -> dict[str, int]:
    return {
        "event_count": _count(db, select(func.count(RiskEvent.id)).where(RiskEvent.employee_id == employee_id)),
        "high_risk_count": _count(
            db,
            select(func.count(RiskEvent.id)).where(
                RiskEvent.employee_id == employee_id,
                RiskEvent.risk_score > HIGH_RISK_SCORE,
            ),
        ),
        "held_payroll": _count(
            db,
            select(func.count(Payroll.id)).where(
                Payroll.employee_id == employee_id,
                Payroll.status == PayrollStatus.HELD,
            ),
        ),
    }


def search_employees(
    db: Session,
    *,
    query: str | None = None,
    limit: int = SEARCH_LIMIT,
) -> list[tuple[Employee, dict[str, int]]]:
    """Case-insensitive substring match on name or email, each with a risk summary."""
    stmt = select(Employee).order_by(Employee.full_name.asc(), Employee.id.asc())
    needle = (query or "").strip()
    if needle:
        stmt = stmt.where(
            or_(
                Employee.full_name.icontains(needle, autoescape=True),
                Employee.email.icontains(needle, autoescape=True),
            )
        )
    employees = db.scalars(stmt.limit(max(1, min(limit, SEARCH_LIMIT)))).all()
    return [(employee, risk_summary(db, employee.id)) for employee in employees]
