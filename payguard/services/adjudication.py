from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from payguard.audit import append_audit_event
from payguard.clock import ensure_utc, utc_now
from payguard.errors import DependencyError, ExpiredError, ForbiddenError, NotFoundError, StateConflictError, ValidationError
from payguard.models import (
    MANAGER_REVIEW_STATUSES,
    AuditDecision,
    ChangeRequest,
    ChangeRequestStatus,
    ChangeType,
    Employee,
    RiskEvent,
    Severity,
    VerificationPath,
)
from payguard.services.accounts import (
    apply_account_change,
    ensure_not_frozen,
    get_employee,
    normalize_address,
    normalize_bank_details,
    promote_trust,
)
from payguard.services.cases import auto_alert, open_fraud_case
from payguard.services.geolocation import GeoInfo, GeoLocator, build_geo_locator
from payguard.services.notifications import Notifier, build_notifier, safe_notify, safe_send_code
from payguard.services.one_time_codes import check_code, issue_code
from payguard.services.routing import route_verification
from payguard.services.signals import UNKNOWN_DEVICE_SENTINEL, ChangeContext, evaluate_signals
from payguard.services.verdicts import Verdict, VerdictProvider, build_verdict_provider
from payguard.settings import get_settings

logger = logging.getLogger("payguard.adjudication")

PATH_AUDIT_DECISIONS = {
    VerificationPath.AUTO_APPROVE: AuditDecision.ALLOW,
    VerificationPath.OTP_REQUIRED: AuditDecision.CHALLENGE,
    VerificationPath.MANAGER_REQUIRED: AuditDecision.CHALLENGE,
    VerificationPath.BLOCK: AuditDecision.BLOCK,
}


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    score: int
    codes: list[str]
    path: VerificationPath
    verdict: Verdict
    risk_event_id: int
    change_request_id: int | None = None
    status: ChangeRequestStatus | None = None
    applied: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "codes": list(self.codes),
            "path": self.path.value,
            "verdict": self.verdict.value,
            "risk_event_id": self.risk_event_id,
            "change_request_id": self.change_request_id,
            "status": self.status.value if self.status is not None else None,
            "applied": self.applied,
        }


@dataclass(frozen=True, slots=True)
class CodeVerificationResult:
    change_request_id: int
    approved: bool
    reason: str
    status: ChangeRequestStatus
    attempts_remaining: int | None = None


@dataclass(frozen=True, slots=True)
class DecisionResult:
    change_request_id: int
    status: ChangeRequestStatus
    approvals: list[int]
    required_approvals: int


def _normalize_context(context: ChangeContext) -> ChangeContext:
    ip = (context.ip or "").strip()
    if not ip:
        raise ValidationError("Source IP is required.")
    device_id = (context.device_id or "").strip() or UNKNOWN_DEVICE_SENTINEL

    if context.change_type == ChangeType.BANK_ACCOUNT:
        routing, account = normalize_bank_details(context.new_routing_number, context.new_account_number)
        return dataclasses.replace(
            context,
            ip=ip,
            device_id=device_id,
            new_routing_number=routing,
            new_account_number=account,
            new_bank_name=(context.new_bank_name or "").strip() or None,
            new_address={},
        )

    return dataclasses.replace(
        context,
        ip=ip,
        device_id=device_id,
        new_routing_number=None,
        new_account_number=None,
        new_bank_name=None,
        new_address=normalize_address(context.new_address),
    )


def _transition(
    db: Session,
    change_request: ChangeRequest,
    *,
    to_status: ChangeRequestStatus,
    now_utc: datetime,
    **values: Any,
) -> None:
    """Compare-and-set on (id, status, version). Losing a race raises StateConflictError."""
    expected_status = change_request.status
    result = db.execute(
        update(ChangeRequest)
        .where(
            ChangeRequest.id == change_request.id,
            ChangeRequest.status == expected_status,
            ChangeRequest.version == change_request.version,
        )
        .values(status=to_status, version=ChangeRequest.version + 1, updated_at=now_utc, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.expire(change_request)
        raise StateConflictError(
            "Change request was modified concurrently.",
            code="CHANGE_REQUEST_CONFLICT",
            current_status=expected_status.value,
        )
    db.refresh(change_request)


def _get_change_request(db: Session, change_request_id: int, *, employee_id: int | None = None) -> ChangeRequest:
    change_request = db.get(ChangeRequest, change_request_id)
    if change_request is None or (employee_id is not None and change_request.employee_id != employee_id):
        raise NotFoundError("Change request not found.", code="CHANGE_REQUEST_NOT_FOUND")
    return change_request


def _apply_request(employee: Employee, change_request: ChangeRequest, *, now_utc: datetime) -> None:
    apply_account_change(
        employee,
        change_type=change_request.change_type,
        new_routing_number=change_request.new_routing_number,
        new_account_number=change_request.new_account_number,
        new_bank_name=change_request.new_bank_name,
        new_address=change_request.new_address,
        now_utc=now_utc,
    )
    promote_trust(employee, ip=change_request.source_ip, device_id=change_request.source_device_id)


class ChangeAdjudicator:
    """Scores account-change attempts and drives change requests to a terminal state.

    Collaborators are injected once; every method takes the caller's session
    and commits the unit of work it owns.
    """

    def __init__(
        self,
        *,
        verdict_provider: VerdictProvider,
        geo_locator: GeoLocator,
        notifier: Notifier,
    ):
        self.verdict_provider = verdict_provider
        self.geo_locator = geo_locator
        self.notifier = notifier

    def _locate(self, employee: Employee, ip: str) -> GeoInfo:
        try:
            return self.geo_locator.lookup(ip)
        except Exception as exc:
            # lookup failures score as an unknown location
            logger.warning(
                "geo_locator_failed",
                extra={"employee_id": employee.id, "error": f"{type(exc).__name__}: {exc}"},
            )
            return GeoInfo.unknown()

    def _classify(self, employee: Employee, *, score: int, codes: list[str], context: dict[str, Any]) -> Verdict:
        try:
            return self.verdict_provider.classify(employee=employee, score=score, codes=codes, context=context)
        except DependencyError as exc:
            logger.warning(
                "verdict_provider_failed",
                extra={"employee_id": employee.id, "dependency": exc.dependency, "error": exc.message},
            )
        except Exception as exc:
            logger.exception(
                "verdict_provider_failed",
                extra={"employee_id": employee.id, "dependency": "verdict", "error": f"{type(exc).__name__}: {exc}"},
            )
        return Verdict.NONE

    def evaluate(
        self,
        db: Session,
        *,
        employee_id: int,
        context: ChangeContext,
        now_utc: datetime | None = None,
    ) -> EvaluationResult:
        now = ensure_utc(now_utc or utc_now())
        context = _normalize_context(context)
        employee = get_employee(db, employee_id)
        ensure_not_frozen(employee)

        geo = self._locate(employee, context.ip)
        signals = evaluate_signals(db, employee, context, geo=geo, now_utc=now)
        verdict = self._classify(
            employee,
            score=signals.score,
            codes=signals.codes,
            context={**context.to_log_dict(), "geo": geo.to_dict()},
        )
        path = route_verification(signals.score, verdict)

        risk_event = RiskEvent(
            employee_id=employee.id,
            action=context.action,
            risk_score=signals.score,
            risk_codes=list(signals.codes),
            ip=context.ip,
            device_id=context.device_id,
            geo=geo.to_dict(),
            verdict=verdict.value,
            created_at=now,
        )
        db.add(risk_event)
        db.flush()

        change_request: ChangeRequest | None = None
        issued_code = None
        if path == VerificationPath.AUTO_APPROVE:
            apply_account_change(
                employee,
                change_type=context.change_type,
                new_routing_number=context.new_routing_number,
                new_account_number=context.new_account_number,
                new_bank_name=context.new_bank_name,
                new_address=context.new_address,
                now_utc=now,
            )
            promote_trust(employee, ip=context.ip, device_id=context.device_id)
        else:
            if path == VerificationPath.OTP_REQUIRED:
                issued_code = issue_code(now_utc=now)
                status = ChangeRequestStatus.PENDING_OTP
            elif path == VerificationPath.MANAGER_REQUIRED:
                status = (
                    ChangeRequestStatus.PENDING_MULTI_APPROVAL
                    if verdict == Verdict.UNCERTAIN
                    else ChangeRequestStatus.PENDING_MANAGER
                )
            else:
                status = ChangeRequestStatus.DENIED

            change_request = ChangeRequest(
                employee_id=employee.id,
                change_type=context.change_type,
                new_routing_number=context.new_routing_number,
                new_account_number=context.new_account_number,
                new_bank_name=context.new_bank_name,
                new_address=dict(context.new_address),
                status=status,
                path=path,
                risk_score=signals.score,
                reason_codes=list(signals.codes),
                risk_event_id=risk_event.id,
                source_ip=context.ip,
                source_device_id=context.device_id,
                otp_hash=issued_code.code_hash if issued_code else None,
                otp_expires_at=issued_code.expires_at if issued_code else None,
                otp_failed_attempts=0,
                approvals=[],
                resolved_at=now if status == ChangeRequestStatus.DENIED else None,
                version=1,
                created_at=now,
                updated_at=now,
            )
            db.add(change_request)
            db.flush()

        append_audit_event(
            db,
            employee_id=employee.id,
            action=context.action,
            decision=PATH_AUDIT_DECISIONS[path],
            reason_codes=signals.codes,
            device_fingerprint=context.device_id,
            ip=context.ip,
            now_utc=now,
        )

        if path == VerificationPath.BLOCK:
            open_fraud_case(
                db,
                employee_id=employee.id,
                severity=Severity.CRITICAL,
                case_type="ACCOUNT_TAKEOVER",
                title=f"Blocked {context.change_type.value.replace('_', ' ').lower()} change",
                description=(
                    f"Change attempt blocked with score {signals.score} "
                    f"(verdict {verdict.value}). Codes: {', '.join(signals.codes) or 'none'}."
                ),
                linked_change_request_id=change_request.id if change_request else None,
                linked_risk_event_ids=[risk_event.id],
                now_utc=now,
            )
        auto_alert(
            db,
            employee_id=employee.id,
            employee_name=employee.full_name,
            risk_score=signals.score,
            risk_codes=signals.codes,
            now_utc=now,
        )
        db.commit()

        result = EvaluationResult(
            score=signals.score,
            codes=list(signals.codes),
            path=path,
            verdict=verdict,
            risk_event_id=risk_event.id,
            change_request_id=change_request.id if change_request else None,
            status=change_request.status if change_request else None,
            applied=path == VerificationPath.AUTO_APPROVE,
        )
        logger.info("risk_evaluated", extra={"employee_id": employee.id, **result.to_dict()})

        if issued_code is not None:
            safe_send_code(
                self.notifier,
                employee=employee,
                code=issued_code.plain_code,
                expires_minutes=get_settings().otp_expire_minutes,
            )
        elif path == VerificationPath.AUTO_APPROVE:
            safe_notify(self.notifier, employee=employee, kind="CHANGE_APPROVED", details={"change_type": context.change_type.value})
        elif path == VerificationPath.MANAGER_REQUIRED:
            safe_notify(
                self.notifier,
                employee=employee,
                kind="CHANGE_PENDING_REVIEW",
                details={"change_request_id": result.change_request_id},
            )
        else:
            safe_notify(
                self.notifier,
                employee=employee,
                kind="CHANGE_BLOCKED",
                details={"change_request_id": result.change_request_id, "ip": context.ip},
            )
        return result

    def verify_code(
        self,
        db: Session,
        *,
        change_request_id: int,
        code: str,
        employee_id: int | None = None,
        now_utc: datetime | None = None,
    ) -> CodeVerificationResult:
        """Check a one-time code against a PENDING_OTP request.

        An expired code is reported as not approved with reason ``EXPIRED`` and
        leaves the request untouched.
        """
        now = ensure_utc(now_utc or utc_now())
        settings = get_settings()
        change_request = _get_change_request(db, change_request_id, employee_id=employee_id)
        if change_request.status != ChangeRequestStatus.PENDING_OTP:
            raise StateConflictError(
                f"Change request is {change_request.status.value}; no code is pending.",
                code="CHANGE_REQUEST_NOT_PENDING_OTP",
                current_status=change_request.status.value,
            )

        try:
            matched = check_code(
                code,
                code_hash=change_request.otp_hash,
                expires_at=change_request.otp_expires_at,
                now_utc=now,
            )
        except ExpiredError:
            logger.info(
                "one_time_code_expired",
                extra={"change_request_id": change_request.id, "employee_id": change_request.employee_id},
            )
            return CodeVerificationResult(
                change_request_id=change_request.id,
                approved=False,
                reason="EXPIRED",
                status=change_request.status,
            )

        employee = get_employee(db, change_request.employee_id, require_active=False)
        if matched:
            ensure_not_frozen(employee)
            _transition(
                db,
                change_request,
                to_status=ChangeRequestStatus.APPROVED,
                now_utc=now,
                otp_hash=None,
                resolved_at=now,
            )
            _apply_request(employee, change_request, now_utc=now)
            append_audit_event(
                db,
                employee_id=employee.id,
                action="CHANGE_CODE_VERIFIED",
                decision=AuditDecision.ALLOW,
                reason_codes=["OTP_VERIFIED"],
                device_fingerprint=change_request.source_device_id,
                ip=change_request.source_ip,
                now_utc=now,
            )
            db.commit()
            logger.info(
                "change_request_code_verified",
                extra={"change_request_id": change_request.id, "employee_id": employee.id},
            )
            safe_notify(
                self.notifier,
                employee=employee,
                kind="CHANGE_APPROVED",
                details={"change_request_id": change_request.id},
            )
            return CodeVerificationResult(
                change_request_id=change_request.id,
                approved=True,
                reason="VERIFIED",
                status=ChangeRequestStatus.APPROVED,
            )

        attempts = change_request.otp_failed_attempts + 1
        escalate = attempts >= settings.otp_max_failed_attempts
        _transition(
            db,
            change_request,
            to_status=ChangeRequestStatus.PENDING_MANAGER if escalate else ChangeRequestStatus.PENDING_OTP,
            now_utc=now,
            otp_failed_attempts=attempts,
            **({"otp_hash": None} if escalate else {}),
        )
        append_audit_event(
            db,
            employee_id=employee.id,
            action="CHANGE_CODE_ESCALATED" if escalate else "CHANGE_CODE_REJECTED",
            decision=AuditDecision.CHALLENGE,
            reason_codes=["OTP_MAX_ATTEMPTS"] if escalate else ["OTP_MISMATCH"],
            device_fingerprint=change_request.source_device_id,
            ip=change_request.source_ip,
            now_utc=now,
        )
        db.commit()
        logger.warning(
            "change_request_code_rejected",
            extra={
                "change_request_id": change_request.id,
                "employee_id": employee.id,
                "failed_attempts": attempts,
                "escalated": escalate,
            },
        )

        if escalate:
            safe_notify(
                self.notifier,
                employee=employee,
                kind="CODE_ESCALATED",
                details={"change_request_id": change_request.id},
            )
            return CodeVerificationResult(
                change_request_id=change_request.id,
                approved=False,
                reason="ESCALATED",
                status=ChangeRequestStatus.PENDING_MANAGER,
                attempts_remaining=0,
            )
        return CodeVerificationResult(
            change_request_id=change_request.id,
            approved=False,
            reason="MISMATCH",
            status=ChangeRequestStatus.PENDING_OTP,
            attempts_remaining=settings.otp_max_failed_attempts - attempts,
        )

    def decide(
        self,
        db: Session,
        *,
        change_request_id: int,
        approver_id: int,
        approve: bool,
        note: str | None = None,
        now_utc: datetime | None = None,
    ) -> DecisionResult:
        now = ensure_utc(now_utc or utc_now())
        approver = get_employee(db, approver_id)
        if not approver.is_approver:
            raise ForbiddenError("Only managers and admins can decide change requests.")

        change_request = _get_change_request(db, change_request_id)
        if change_request.status not in MANAGER_REVIEW_STATUSES:
            raise StateConflictError(
                f"Change request is {change_request.status.value}; it is not awaiting review.",
                code="CHANGE_REQUEST_NOT_PENDING_REVIEW",
                current_status=change_request.status.value,
            )
        if change_request.employee_id == approver.id:
            raise ForbiddenError("Approvers cannot decide their own change requests.")

        is_multi = change_request.status == ChangeRequestStatus.PENDING_MULTI_APPROVAL
        required = max(1, get_settings().multi_approval_required) if is_multi else 1
        employee = get_employee(db, change_request.employee_id, require_active=False)
        review_note = (note or "").strip() or None

        if not approve:
            _transition(
                db,
                change_request,
                to_status=ChangeRequestStatus.DENIED,
                now_utc=now,
                reviewed_by=approver.id,
                review_note=review_note,
                resolved_at=now,
            )
            append_audit_event(
                db,
                employee_id=employee.id,
                action="CHANGE_DENIED",
                decision=AuditDecision.BLOCK,
                reason_codes=["MANAGER_DENIED"],
                device_fingerprint=change_request.source_device_id,
                ip=change_request.source_ip,
                now_utc=now,
            )
            if is_multi:
                open_fraud_case(
                    db,
                    employee_id=employee.id,
                    severity=Severity.HIGH,
                    case_type="SUSPICIOUS_CHANGE",
                    title="Change denied after multi-party review",
                    description=review_note or "Denied during multi-party review.",
                    linked_change_request_id=change_request.id,
                    linked_risk_event_ids=[change_request.risk_event_id] if change_request.risk_event_id else [],
                    opened_by=str(approver.id),
                    now_utc=now,
                )
            db.commit()
            logger.info(
                "change_request_denied",
                extra={"change_request_id": change_request.id, "approver_id": approver.id},
            )
            safe_notify(
                self.notifier,
                employee=employee,
                kind="CHANGE_DENIED",
                details={"change_request_id": change_request.id, "note": review_note},
            )
            return DecisionResult(
                change_request_id=change_request.id,
                status=ChangeRequestStatus.DENIED,
                approvals=list(change_request.approvals or []),
                required_approvals=required,
            )

        approvals = [int(item) for item in (change_request.approvals or [])]
        if approver.id in approvals:
            raise StateConflictError(
                "Approver has already approved this change request.",
                code="DUPLICATE_APPROVAL",
                current_status=change_request.status.value,
            )
        approvals.append(approver.id)

        if len(approvals) < required:
            _transition(
                db,
                change_request,
                to_status=change_request.status,
                now_utc=now,
                approvals=approvals,
            )
            append_audit_event(
                db,
                employee_id=employee.id,
                action="CHANGE_APPROVAL_RECORDED",
                decision=AuditDecision.CHALLENGE,
                reason_codes=[f"APPROVALS_{len(approvals)}_OF_{required}"],
                device_fingerprint=change_request.source_device_id,
                ip=change_request.source_ip,
                now_utc=now,
            )
            db.commit()
            logger.info(
                "change_request_approval_recorded",
                extra={
                    "change_request_id": change_request.id,
                    "approver_id": approver.id,
                    "approvals": approvals,
                    "required_approvals": required,
                },
            )
            return DecisionResult(
                change_request_id=change_request.id,
                status=change_request.status,
                approvals=approvals,
                required_approvals=required,
            )

        ensure_not_frozen(employee)
        _transition(
            db,
            change_request,
            to_status=ChangeRequestStatus.APPROVED,
            now_utc=now,
            approvals=approvals,
            reviewed_by=approver.id,
            review_note=review_note,
            resolved_at=now,
        )
        _apply_request(employee, change_request, now_utc=now)
        append_audit_event(
            db,
            employee_id=employee.id,
            action="CHANGE_APPROVED",
            decision=AuditDecision.ALLOW,
            reason_codes=["MANAGER_APPROVED"],
            device_fingerprint=change_request.source_device_id,
            ip=change_request.source_ip,
            now_utc=now,
        )
        db.commit()
        logger.info(
            "change_request_approved",
            extra={"change_request_id": change_request.id, "approver_id": approver.id, "approvals": approvals},
        )
        safe_notify(
            self.notifier,
            employee=employee,
            kind="CHANGE_APPROVED",
            details={"change_request_id": change_request.id},
        )
        return DecisionResult(
            change_request_id=change_request.id,
            status=ChangeRequestStatus.APPROVED,
            approvals=approvals,
            required_approvals=required,
        )

    def expire_stale_code_requests(self, db: Session, *, now_utc: datetime | None = None) -> int:
        """Move PENDING_OTP requests whose code lapsed past the grace window to EXPIRED."""
        now = ensure_utc(now_utc or utc_now())
        cutoff = now - timedelta(minutes=max(0, get_settings().otp_expired_sweep_grace_minutes))
        stale_requests = list(
            db.scalars(
                select(ChangeRequest)
                .where(
                    ChangeRequest.status == ChangeRequestStatus.PENDING_OTP,
                    ChangeRequest.otp_expires_at < cutoff,
                )
                .order_by(ChangeRequest.id.asc())
            ).all()
        )

        expired_count = 0
        for change_request in stale_requests:
            try:
                with db.begin_nested():
                    _transition(
                        db,
                        change_request,
                        to_status=ChangeRequestStatus.EXPIRED,
                        now_utc=now,
                        otp_hash=None,
                        resolved_at=now,
                    )
                    append_audit_event(
                        db,
                        employee_id=change_request.employee_id,
                        action="CHANGE_CODE_EXPIRED",
                        decision=AuditDecision.BLOCK,
                        reason_codes=["OTP_EXPIRED"],
                        device_fingerprint=change_request.source_device_id,
                        ip=change_request.source_ip,
                        now_utc=now,
                    )
            except StateConflictError:
                logger.info("stale_code_request_skipped", extra={"change_request_id": change_request.id})
                continue
            expired_count += 1

        db.commit()
        if expired_count:
            logger.info("stale_code_requests_expired", extra={"expired_count": expired_count})
        return expired_count


def build_adjudicator() -> ChangeAdjudicator:
    return ChangeAdjudicator(
        verdict_provider=build_verdict_provider(),
        geo_locator=build_geo_locator(),
        notifier=build_notifier(),
    )


def list_pending_reviews(db: Session, *, limit: int = 100) -> list[ChangeRequest]:
    return list(
        db.scalars(
            select(ChangeRequest)
            .where(ChangeRequest.status.in_(list(MANAGER_REVIEW_STATUSES)))
            .order_by(ChangeRequest.created_at.asc(), ChangeRequest.id.asc())
            .limit(max(1, min(limit, 500)))
        ).all()
    )


@lru_cache
def get_adjudicator() -> ChangeAdjudicator:
    return build_adjudicator()
