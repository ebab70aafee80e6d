from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from payguard.clock import utc_now
from payguard.errors import NotFoundError
from payguard.models import Alert, AlertSeverity, FraudCase, FraudCaseStatus, Severity

logger = logging.getLogger("payguard.cases")

CRITICAL_ALERT_SCORE = 80
WARNING_ALERT_SCORE = 60
BURST_CODE = "HIGH_RISK_BURST"


def create_alert(
    db: Session,
    *,
    alert_type: str,
    severity: AlertSeverity,
    message: str,
    employee_id: int | None = None,
    details: dict[str, Any] | None = None,
    linked_case_id: int | None = None,
    now_utc: datetime | None = None,
) -> Alert:
    alert = Alert(
        alert_type=alert_type,
        severity=severity,
        employee_id=employee_id,
        message=message,
        details=dict(details or {}),
        linked_case_id=linked_case_id,
        is_read=False,
        created_at=now_utc or utc_now(),
    )
    db.add(alert)
    db.flush()
    logger.warning(
        "alert_created",
        extra={
            "alert_id": alert.id,
            "alert_type": alert_type,
            "severity": severity.value,
            "employee_id": employee_id,
        },
    )
    return alert


def auto_alert(
    db: Session,
    *,
    employee_id: int,
    employee_name: str,
    risk_score: int,
    risk_codes: Sequence[str],
    now_utc: datetime | None = None,
) -> Alert | None:
    """Raise a staff alert when an attempt crosses the alerting thresholds."""
    codes = list(risk_codes)
    details = {"risk_score": risk_score, "risk_codes": codes}
    if risk_score >= CRITICAL_ALERT_SCORE or BURST_CODE in codes:
        return create_alert(
            db,
            alert_type="ACCOUNT_TAKEOVER",
            severity=AlertSeverity.CRITICAL,
            employee_id=employee_id,
            message=(
                f"Critical risk detected on {employee_name}'s account. "
                f"Score: {risk_score}. Codes: {', '.join(codes)}."
            ),
            details=details,
            now_utc=now_utc,
        )
    if risk_score >= WARNING_ALERT_SCORE:
        return create_alert(
            db,
            alert_type="HIGH_RISK_ATTEMPT",
            severity=AlertSeverity.WARNING,
            employee_id=employee_id,
            message=f"High-risk change attempt by {employee_name}. Score: {risk_score}.",
            details=details,
            now_utc=now_utc,
        )
    return None


def open_fraud_case(
    db: Session,
    *,
    employee_id: int,
    severity: Severity,
    title: str,
    description: str = "",
    case_type: str = "OTHER",
    linked_change_request_id: int | None = None,
    linked_risk_event_ids: Sequence[int] = (),
    opened_by: str = "system",
    now_utc: datetime | None = None,
) -> FraudCase:
    now = now_utc or utc_now()
    fraud_case = FraudCase(
        employee_id=employee_id,
        status=FraudCaseStatus.OPEN,
        severity=severity,
        case_type=case_type,
        title=title,
        description=description,
        linked_change_request_id=linked_change_request_id,
        linked_risk_event_ids=[int(item) for item in linked_risk_event_ids],
        timeline=[
            {
                "action": "CASE_OPENED",
                "note": description or "Case opened.",
                "performed_by": opened_by,
                "at": now.isoformat(),
            }
        ],
        created_at=now,
    )
    db.add(fraud_case)
    db.flush()

    create_alert(
        db,
        alert_type="NEW_FRAUD_CASE",
        severity=AlertSeverity.CRITICAL if severity == Severity.CRITICAL else AlertSeverity.WARNING,
        employee_id=employee_id,
        message=f"New {severity.value} fraud case opened: {title}",
        linked_case_id=fraud_case.id,
        now_utc=now,
    )
    logger.info(
        "fraud_case_opened",
        extra={
            "case_id": fraud_case.id,
            "employee_id": employee_id,
            "severity": severity.value,
            "case_type": case_type,
            "linked_change_request_id": linked_change_request_id,
        },
    )
    return fraud_case


def list_fraud_cases(
    db: Session,
    *,
    status: FraudCaseStatus | None = None,
    severity: Severity | None = None,
    limit: int = 100,
) -> list[FraudCase]:
    stmt = select(FraudCase).order_by(FraudCase.created_at.desc(), FraudCase.id.desc())
    if status is not None:
        stmt = stmt.where(FraudCase.status == status)
    if severity is not None:
        stmt = stmt.where(FraudCase.severity == severity)
    return list(db.scalars(stmt.limit(max(1, min(limit, 500)))).all())


def update_fraud_case(
    db: Session,
    *,
    case_id: int,
    performed_by: str,
    status: FraudCaseStatus | None = None,
    note: str | None = None,
    now_utc: datetime | None = None,
) -> FraudCase:
    fraud_case = db.get(FraudCase, case_id)
    if fraud_case is None:
        raise NotFoundError("Fraud case not found.", code="CASE_NOT_FOUND")

    now = now_utc or utc_now()
    if status is not None:
        fraud_case.status = status
    if note or status is not None:
        # Reassign so the JSON column is flagged dirty.
        fraud_case.timeline = [
            *(fraud_case.timeline or []),
            {
                "action": status.value if status is not None else "NOTE_ADDED",
                "note": note or f"Status changed to {status.value if status else ''}",
                "performed_by": performed_by,
                "at": now.isoformat(),
            },
        ]
    db.commit()
    db.refresh(fraud_case)
    return fraud_case


def list_alerts(db: Session, *, unread_only: bool = False, limit: int = 100) -> list[Alert]:
    stmt = select(Alert).order_by(Alert.created_at.desc(), Alert.id.desc())
    if unread_only:
        stmt = stmt.where(Alert.is_read.is_(False))
    return list(db.scalars(stmt.limit(max(1, min(limit, 500)))).all())


def mark_alert_read(db: Session, *, alert_id: int) -> Alert:
    alert = db.get(Alert, alert_id)
    if alert is None:
        raise NotFoundError("Alert not found.", code="ALERT_NOT_FOUND")
    alert.is_read = True
    db.commit()
    db.refresh(alert)
    return alert
