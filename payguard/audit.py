from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payguard.clock import canonical_timestamp, utc_now
from payguard.errors import ChainIntegrityError, StateConflictError
from payguard.models import AuditDecision, AuditEvent, Employee

logger = logging.getLogger("payguard.audit")

GENESIS_HASH = "GENESIS"
_APPEND_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class ChainVerification:
    employee_id: int
    intact: bool
    event_count: int
    broken_index: int | None = None
    broken_event: AuditEvent | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        broken: dict[str, Any] | None = None
        if self.broken_event is not None:
            broken = {
                "id": self.broken_event.id,
                "action": self.broken_event.action,
                "decision": _decision_value(self.broken_event.decision),
                "previous_hash": self.broken_event.previous_hash,
                "current_hash": self.broken_event.current_hash,
                "created_at": self.broken_event.created_at.isoformat(),
            }
        return {
            "employee_id": self.employee_id,
            "intact": self.intact,
            "event_count": self.event_count,
            "broken_index": self.broken_index,
            "broken_event": broken,
            "reason": self.reason,
        }


def _decision_value(decision: AuditDecision | str) -> str:
    if isinstance(decision, AuditDecision):
        return decision.value
    return str(decision)


def compute_event_hash(
    *,
    employee_id: int,
    action: str,
    decision: AuditDecision | str,
    reason_codes: Iterable[str],
    device_fingerprint: str,
    ip: str,
    previous_hash: str,
    created_at: datetime,
) -> str:
    # Values may contain "|" or ","; a JSON array keeps each field distinct.
    canonical = json.dumps(
        [
            str(employee_id),
            action,
            _decision_value(decision),
            [str(code) for code in reason_codes],
            device_fingerprint,
            ip,
            previous_hash,
            canonical_timestamp(created_at),
        ],
        separators=(",", ":"),
        ensure_ascii=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def recompute_hash(event: AuditEvent) -> str:
    return compute_event_hash(
        employee_id=event.employee_id,
        action=event.action,
        decision=event.decision,
        reason_codes=event.reason_codes or [],
        device_fingerprint=event.device_fingerprint or "",
        ip=event.ip or "",
        previous_hash=event.previous_hash,
        created_at=event.created_at,
    )


def build_audit_event(
    *,
    employee_id: int,
    action: str,
    decision: AuditDecision,
    reason_codes: Sequence[str],
    device_fingerprint: str,
    ip: str,
    previous_hash: str,
    created_at: datetime,
) -> AuditEvent:
    """Create a fully derived event; the hash is fixed before the row is persisted."""
    codes = [str(code) for code in reason_codes]
    return AuditEvent(
        employee_id=employee_id,
        action=action,
        decision=decision,
        reason_codes=codes,
        device_fingerprint=device_fingerprint,
        ip=ip,
        previous_hash=previous_hash,
        current_hash=compute_event_hash(
            employee_id=employee_id,
            action=action,
            decision=decision,
            reason_codes=codes,
            device_fingerprint=device_fingerprint,
            ip=ip,
            previous_hash=previous_hash,
            created_at=created_at,
        ),
        created_at=created_at,
    )


def _chain_tail_hash(db: Session, employee_id: int) -> str:
    tail = db.scalar(
        select(AuditEvent.current_hash)
        .where(AuditEvent.employee_id == employee_id)
        .order_by(AuditEvent.id.desc())
        .limit(1)
    )
    return tail or GENESIS_HASH


def append_audit_event(
    db: Session,
    *,
    employee_id: int,
    action: str,
    decision: AuditDecision,
    reason_codes: Sequence[str] = (),
    device_fingerprint: str | None = None,
    ip: str | None = None,
    now_utc: datetime | None = None,
) -> AuditEvent:
    """Append to the employee's chain inside the caller's transaction.

    The employee row is locked for the rest of the transaction so concurrent
    appends for the same employee queue behind each other. The unique
    (employee_id, previous_hash) constraint rejects a fork if a writer still
    read a stale tail; that attempt is rolled back to its savepoint and retried.
    """
    created_at = now_utc or utc_now()
    db.execute(select(Employee.id).where(Employee.id == employee_id).with_for_update())

    for attempt in range(1, _APPEND_ATTEMPTS + 1):
        try:
            with db.begin_nested():
                audit_event = build_audit_event(
                    employee_id=employee_id,
                    action=action,
                    decision=decision,
                    reason_codes=reason_codes,
                    device_fingerprint=(device_fingerprint or "").strip(),
                    ip=(ip or "").strip(),
                    previous_hash=_chain_tail_hash(db, employee_id),
                    created_at=created_at,
                )
                db.add(audit_event)
                db.flush()
        except IntegrityError:
            logger.warning(
                "audit_chain_append_conflict",
                extra={"employee_id": employee_id, "action": action, "attempt": attempt},
            )
            continue

        logger.info(
            "audit_event_appended",
            extra={
                "employee_id": employee_id,
                "action": action,
                "decision": decision.value,
                "reason_codes": list(reason_codes),
                "ip": ip,
                "device_fingerprint": device_fingerprint,
                "current_hash": audit_event.current_hash,
            },
        )
        return audit_event

    raise StateConflictError(
        "Audit chain is being appended concurrently. Retry the operation.",
        code="AUDIT_CHAIN_CONTENTION",
    )


def list_audit_events(db: Session, employee_id: int) -> list[AuditEvent]:
    return list(
        db.scalars(
            select(AuditEvent)
            .where(AuditEvent.employee_id == employee_id)
            .order_by(AuditEvent.id.asc())
        ).all()
    )


def verify_chain(employee_id: int, events: Sequence[AuditEvent]) -> ChainVerification:
    expected_previous = GENESIS_HASH
    for index, audit_event in enumerate(events):
        if audit_event.previous_hash != expected_previous:
            return ChainVerification(
                employee_id=employee_id,
                intact=False,
                event_count=len(events),
                broken_index=index,
                broken_event=audit_event,
                reason="BROKEN_LINK",
            )
        if recompute_hash(audit_event) != audit_event.current_hash:
            return ChainVerification(
                employee_id=employee_id,
                intact=False,
                event_count=len(events),
                broken_index=index,
                broken_event=audit_event,
                reason="CONTENT_TAMPERED",
            )
        expected_previous = audit_event.current_hash

    return ChainVerification(employee_id=employee_id, intact=True, event_count=len(events))


def verify_audit_chain(db: Session, employee_id: int) -> ChainVerification:
    result = verify_chain(employee_id, list_audit_events(db, employee_id))
    if not result.intact:
        logger.error("audit_chain_broken", extra=result.to_dict())
    return result


def ensure_audit_chain_intact(db: Session, employee_id: int) -> ChainVerification:
    result = verify_audit_chain(db, employee_id)
    if not result.intact:
        raise ChainIntegrityError(
            f"Audit chain for employee {employee_id} is broken at index {result.broken_index} ({result.reason}).",
            broken_index=result.broken_index,
            details=result.to_dict(),
        )
    return result
