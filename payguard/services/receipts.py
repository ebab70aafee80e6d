from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from payguard.clock import canonical_timestamp
from payguard.models import ChangeRequest, ChangeRequestStatus

logger = logging.getLogger("payguard.receipts")

# Receipts are single-link proofs handed to employees. They are anchored to
# their own sentinel and never touch the per-employee audit chain.
RECEIPT_GENESIS = "PAYGUARD-RECEIPT-GENESIS"


@dataclass(frozen=True, slots=True)
class ChangeReceipt:
    receipt_id: str
    change_id: int
    employee_id: int
    status: str
    risk_score: int
    created_at: str
    event_hash: str
    chain_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "change_id": self.change_id,
            "employee_id": self.employee_id,
            "status": self.status,
            "risk_score": self.risk_score,
            "created_at": self.created_at,
            "event_hash": self.event_hash,
            "chain_hash": self.chain_hash,
            "previous_hash": RECEIPT_GENESIS,
        }


def _receipt_payload(
    *,
    change_id: int,
    employee_id: int,
    status: str,
    risk_score: int,
    created_at: str,
) -> str:
    payload = {
        "change_id": int(change_id),
        "employee_id": int(employee_id),
        "status": status,
        "risk_score": int(risk_score),
        "created_at": created_at,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def compute_receipt_hashes(
    *,
    change_id: int,
    employee_id: int,
    status: str,
    risk_score: int,
    created_at: str,
) -> tuple[str, str]:
    event_hash = hashlib.sha256(
        _receipt_payload(
            change_id=change_id,
            employee_id=employee_id,
            status=status,
            risk_score=risk_score,
            created_at=created_at,
        ).encode("utf-8")
    ).hexdigest()
    chain_hash = hashlib.sha256(f"{RECEIPT_GENESIS}|{event_hash}".encode("utf-8")).hexdigest()
    return event_hash, chain_hash


def build_change_receipt(change_request: ChangeRequest) -> ChangeReceipt:
    status = (
        change_request.status.value
        if isinstance(change_request.status, ChangeRequestStatus)
        else str(change_request.status)
    )
    created_at = canonical_timestamp(change_request.created_at)
    event_hash, chain_hash = compute_receipt_hashes(
        change_id=change_request.id,
        employee_id=change_request.employee_id,
        status=status,
        risk_score=change_request.risk_score,
        created_at=created_at,
    )
    return ChangeReceipt(
        receipt_id=f"RCPT-{change_request.id:08d}-{event_hash[:12].upper()}",
        change_id=change_request.id,
        employee_id=change_request.employee_id,
        status=status,
        risk_score=change_request.risk_score,
        created_at=created_at,
        event_hash=event_hash,
        chain_hash=chain_hash,
    )


@dataclass(frozen=True, slots=True)
class ReceiptVerification:
    change_id: int
    valid: bool
    reason: str
    mismatched_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_id": self.change_id,
            "valid": self.valid,
            "reason": self.reason,
            "mismatched_fields": list(self.mismatched_fields),
        }


def _presented_timestamp(value: datetime | str) -> str:
    if isinstance(value, datetime):
        return canonical_timestamp(value)
    text = value.strip()
    try:
        return canonical_timestamp(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return text


def _same_digest(expected: str, presented: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), presented.strip().lower().encode("utf-8"))


def verify_change_receipt(
    db: Session,
    *,
    change_id: int,
    employee_id: int,
    status: str,
    risk_score: int,
    created_at: datetime | str,
    event_hash: str,
    chain_hash: str,
    visible_to: int | None = None,
) -> ReceiptVerification:
    """Check a presented receipt against the stored change request.

    The hashes are unkeyed, so a receipt is only trusted when both its fields
    and its hashes match what is rebuilt from the record. `visible_to` limits
    the lookup to one employee's requests.
    """
    change_request = db.get(ChangeRequest, change_id)
    if change_request is None or (visible_to is not None and change_request.employee_id != visible_to):
        return ReceiptVerification(change_id=change_id, valid=False, reason="NOT_FOUND")

    stored = build_change_receipt(change_request)
    presented = {
        "employee_id": int(employee_id),
        "status": status.strip().upper(),
        "risk_score": int(risk_score),
        "created_at": _presented_timestamp(created_at),
    }
    mismatched = [name for name, value in presented.items() if getattr(stored, name) != value]
    if mismatched:
        logger.warning(
            "receipt_field_mismatch",
            extra={"change_id": change_id, "mismatched_fields": mismatched},
        )
        return ReceiptVerification(
            change_id=change_id,
            valid=False,
            reason="FIELD_MISMATCH",
            mismatched_fields=mismatched,
        )

    if not (_same_digest(stored.event_hash, event_hash) and _same_digest(stored.chain_hash, chain_hash)):
        return ReceiptVerification(change_id=change_id, valid=False, reason="HASH_MISMATCH")
    return ReceiptVerification(change_id=change_id, valid=True, reason="VALID")
