from __future__ import annotations

import http.client
import unittest
from datetime import timedelta
from unittest.mock import patch

from db_support import (
    KNOWN_DEVICE,
    KNOWN_IP,
    NOW,
    FixedVerdictProvider,
    RecordingNotifier,
    add_employee,
    build_session_factory,
    build_sqlite_engine,
    wrong_code,
)
from sqlalchemy import func, select, update

from payguard.audit import list_audit_events, verify_audit_chain
from payguard.errors import (
    AccountFrozenError,
    DependencyError,
    ForbiddenError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from payguard.models import (
    Alert,
    AuditDecision,
    ChangeRequest,
    ChangeRequestStatus,
    ChangeType,
    EmployeeRole,
    FraudCase,
    RiskEvent,
    Severity,
    VerificationPath,
)
from payguard.services.accounts import freeze_employee
from payguard.services.adjudication import ChangeAdjudicator, _transition, list_pending_reviews
from payguard.services.geolocation import GeoInfo, HttpGeoLocator, StaticGeoLocator
from payguard.services.signals import ChangeContext
from payguard.services.verdicts import HttpVerdictProvider, Verdict

UNKNOWN_IP = "203.0.113.9"
PUBLIC_IP = "8.8.8.8"
NEW_ADDRESS = {"street": "9 Elm St", "city": "Albany", "state": "ny", "zip": "12208"}


def _address_change(*, ip: str = KNOWN_IP, device_id: str = KNOWN_DEVICE) -> ChangeContext:
    return ChangeContext(change_type=ChangeType.ADDRESS, ip=ip, device_id=device_id, new_address=dict(NEW_ADDRESS))


def _risky_bank_change() -> ChangeContext:
    # unknown ip + unknown device + routing away from baseline
    return ChangeContext(
        change_type=ChangeType.BANK_ACCOUNT,
        ip=UNKNOWN_IP,
        device_id="phone-77",
        new_routing_number="111 000 025",
        new_account_number="99887766",
        new_bank_name="Harbor Credit Union",
    )


class AdjudicationTestCase(unittest.TestCase):
    verdict = Verdict.NONE

    def setUp(self) -> None:
        self.engine = build_sqlite_engine()
        self.db = build_session_factory(self.engine)()
        self.employee = add_employee(self.db)
        self.manager = add_employee(self.db, full_name="Morgan Lee", role=EmployeeRole.MANAGER)
        self.second_manager = add_employee(self.db, full_name="Riley Chen", role=EmployeeRole.ADMIN)
        self.notifier = RecordingNotifier()
        self.verdicts = FixedVerdictProvider(self.verdict)
        self.adjudicator = ChangeAdjudicator(
            verdict_provider=self.verdicts,
            geo_locator=StaticGeoLocator(),
            notifier=self.notifier,
        )

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _count(self, model) -> int:  # type: ignore[no-untyped-def]
        return int(self.db.scalar(select(func.count()).select_from(model)) or 0)

    def _evaluate(self, context: ChangeContext, *, employee_id: int | None = None):  # type: ignore[no-untyped-def]
        return self.adjudicator.evaluate(
            self.db,
            employee_id=employee_id or self.employee.id,
            context=context,
            now_utc=NOW,
        )


class EvaluateTests(AdjudicationTestCase):
    def test_low_risk_change_is_applied_immediately(self) -> None:
        result = self._evaluate(_address_change())

        self.assertEqual(result.path, VerificationPath.AUTO_APPROVE)
        self.assertTrue(result.applied)
        self.assertIsNone(result.change_request_id)
        self.assertEqual(self.employee.address_street, "9 Elm St")
        self.assertEqual(self.employee.address_state, "NY")
        self.assertEqual(self.employee.address_country, "US")
        self.assertEqual(self._count(ChangeRequest), 0)
        self.assertEqual(self._count(RiskEvent), 1)

        events = list_audit_events(self.db, self.employee.id)
        self.assertEqual([item.decision for item in events], [AuditDecision.ALLOW])
        self.assertEqual(events[0].action, "ADDRESS_CHANGE_ATTEMPT")
        self.assertEqual(self.notifier.kinds(), ["CHANGE_APPROVED"])

    def test_medium_risk_change_requires_code(self) -> None:
        result = self._evaluate(_address_change(ip=UNKNOWN_IP))

        self.assertEqual(result.score, 30)
        self.assertEqual(result.codes, ["UNKNOWN_IP"])
        self.assertEqual(result.path, VerificationPath.OTP_REQUIRED)
        self.assertEqual(result.status, ChangeRequestStatus.PENDING_OTP)

        change_request = self.db.get(ChangeRequest, result.change_request_id)
        self.assertEqual(change_request.otp_expires_at.replace(tzinfo=None), (NOW + timedelta(minutes=10)).replace(tzinfo=None))
        self.assertNotEqual(change_request.otp_hash, self.notifier.last_code)
        self.assertEqual(self.employee.address_street, "12 Main St")
        self.assertEqual(list_audit_events(self.db, self.employee.id)[0].decision, AuditDecision.CHALLENGE)

    def test_high_risk_change_goes_to_manager_and_alerts(self) -> None:
        result = self._evaluate(_risky_bank_change())

        self.assertEqual(result.codes, ["UNKNOWN_IP", "UNKNOWN_DEVICE", "ROUTING_CHANGED"])
        self.assertEqual(result.score, 100)
        self.assertEqual(result.path, VerificationPath.MANAGER_REQUIRED)
        self.assertEqual(result.status, ChangeRequestStatus.PENDING_MANAGER)
        self.assertEqual(self.employee.bank_routing_number, "021000021")

        change_request = self.db.get(ChangeRequest, result.change_request_id)
        self.assertEqual(change_request.new_routing_number, "111000025")
        self.assertIsNone(change_request.otp_hash)
        self.assertEqual([item.id for item in list_pending_reviews(self.db)], [change_request.id])

        alert = self.db.scalar(select(Alert))
        self.assertEqual(alert.alert_type, "ACCOUNT_TAKEOVER")
        self.assertEqual(self.notifier.kinds(), ["CHANGE_PENDING_REVIEW"])

    def test_missing_ip_is_rejected_before_scoring(self) -> None:
        with self.assertRaises(ValidationError):
            self._evaluate(_address_change(ip="  "))

        self.assertEqual(self._count(RiskEvent), 0)

    def test_malformed_bank_details_are_rejected(self) -> None:
        context = ChangeContext(
            change_type=ChangeType.BANK_ACCOUNT,
            ip=KNOWN_IP,
            device_id=KNOWN_DEVICE,
            new_routing_number="12345",
            new_account_number="99887766",
        )
        with self.assertRaises(ValidationError):
            self._evaluate(context)

    def test_frozen_account_cannot_request_changes(self) -> None:
        freeze_employee(self.db, employee_id=self.employee.id, actor_id=self.manager.id, now_utc=NOW)

        with self.assertRaises(AccountFrozenError):
            self._evaluate(_address_change())

    def test_unknown_employee_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self._evaluate(_address_change(), employee_id=9999)

    def test_notification_failure_does_not_abort_decision(self) -> None:
        self.adjudicator.notifier = RecordingNotifier(fail=True)

        result = self._evaluate(_address_change(ip=UNKNOWN_IP))

        self.assertEqual(result.status, ChangeRequestStatus.PENDING_OTP)
        self.assertEqual(self._count(ChangeRequest), 1)


class VerdictHandlingTests(AdjudicationTestCase):
    def test_block_verdict_denies_and_opens_case(self) -> None:
        self.verdicts.verdict = Verdict.BLOCK

        result = self._evaluate(_address_change())

        self.assertEqual(result.path, VerificationPath.BLOCK)
        self.assertEqual(result.status, ChangeRequestStatus.DENIED)
        self.assertFalse(result.applied)
        self.assertEqual(self.employee.address_street, "12 Main St")

        change_request = self.db.get(ChangeRequest, result.change_request_id)
        self.assertIsNotNone(change_request.resolved_at)

        fraud_case = self.db.scalar(select(FraudCase))
        self.assertEqual(fraud_case.severity, Severity.CRITICAL)
        self.assertEqual(fraud_case.linked_change_request_id, change_request.id)
        self.assertEqual(fraud_case.linked_risk_event_ids, [result.risk_event_id])
        self.assertEqual(self.db.scalar(select(Alert.alert_type)), "NEW_FRAUD_CASE")
        self.assertEqual(list_audit_events(self.db, self.employee.id)[0].decision, AuditDecision.BLOCK)
        self.assertEqual(self.notifier.kinds(), ["CHANGE_BLOCKED"])

    def test_verdict_failure_degrades_to_score_routing(self) -> None:
        self.verdicts.error = DependencyError("verdict service down", dependency="verdict")

        result = self._evaluate(_address_change(ip=UNKNOWN_IP))

        self.assertEqual(self.verdicts.calls, 1)
        self.assertEqual(result.verdict, Verdict.NONE)
        self.assertEqual(result.path, VerificationPath.OTP_REQUIRED)

    def test_uncertain_verdict_requires_two_approvers(self) -> None:
        self.verdicts.verdict = Verdict.UNCERTAIN
        result = self._evaluate(_risky_bank_change())
        self.assertEqual(result.status, ChangeRequestStatus.PENDING_MULTI_APPROVAL)

        first = self.adjudicator.decide(
            self.db,
            change_request_id=result.change_request_id,
            approver_id=self.manager.id,
            approve=True,
            now_utc=NOW,
        )
        self.assertEqual(first.status, ChangeRequestStatus.PENDING_MULTI_APPROVAL)
        self.assertEqual(first.approvals, [self.manager.id])
        self.assertEqual(first.required_approvals, 2)
        self.assertEqual(self.employee.bank_routing_number, "021000021")

        with self.assertRaises(StateConflictError) as ctx:
            self.adjudicator.decide(
                self.db,
                change_request_id=result.change_request_id,
                approver_id=self.manager.id,
                approve=True,
                now_utc=NOW,
            )
        self.assertEqual(ctx.exception.code, "DUPLICATE_APPROVAL")

        second = self.adjudicator.decide(
            self.db,
            change_request_id=result.change_request_id,
            approver_id=self.second_manager.id,
            approve=True,
            now_utc=NOW + timedelta(minutes=5),
        )
        self.assertEqual(second.status, ChangeRequestStatus.APPROVED)
        self.assertEqual(second.approvals, [self.manager.id, self.second_manager.id])
        self.assertEqual(self.employee.bank_routing_number, "111000025")
        self.assertTrue(verify_audit_chain(self.db, self.employee.id).intact)

    def test_multi_party_denial_opens_case(self) -> None:
        self.verdicts.verdict = Verdict.UNCERTAIN
        result = self._evaluate(_risky_bank_change())

        decision = self.adjudicator.decide(
            self.db,
            change_request_id=result.change_request_id,
            approver_id=self.manager.id,
            approve=False,
            note="Employee did not recognise the request.",
            now_utc=NOW,
        )

        self.assertEqual(decision.status, ChangeRequestStatus.DENIED)
        fraud_case = self.db.scalar(select(FraudCase))
        self.assertEqual(fraud_case.severity, Severity.HIGH)
        self.assertEqual(fraud_case.description, "Employee did not recognise the request.")


class CodeVerificationTests(AdjudicationTestCase):
    def setUp(self) -> None:
        super().setUp()
        result = self._evaluate(_address_change(ip=UNKNOWN_IP))
        self.change_request_id = result.change_request_id
        self.code = self.notifier.last_code

    def _verify(self, code: str, *, minutes: float = 1, employee_id: int | None = None):  # type: ignore[no-untyped-def]
        return self.adjudicator.verify_code(
            self.db,
            change_request_id=self.change_request_id,
            code=code,
            employee_id=employee_id,
            now_utc=NOW + timedelta(minutes=minutes),
        )

    def test_correct_code_approves_and_promotes_trust(self) -> None:
        result = self._verify(self.code)

        self.assertTrue(result.approved)
        self.assertEqual(result.status, ChangeRequestStatus.APPROVED)
        change_request = self.db.get(ChangeRequest, self.change_request_id)
        self.assertIsNone(change_request.otp_hash)
        self.assertEqual(change_request.version, 2)
        self.assertEqual(self.employee.address_street, "9 Elm St")
        self.assertIn(UNKNOWN_IP, self.employee.known_ips)

        events = list_audit_events(self.db, self.employee.id)
        self.assertEqual([item.action for item in events], ["ADDRESS_CHANGE_ATTEMPT", "CHANGE_CODE_VERIFIED"])
        self.assertTrue(verify_audit_chain(self.db, self.employee.id).intact)

    def test_code_is_usable_only_once(self) -> None:
        self._verify(self.code)

        with self.assertRaises(StateConflictError):
            self._verify(self.code, minutes=2)

    def test_code_after_expiry_fails_without_mutation(self) -> None:
        result = self._verify(self.code, minutes=11)

        self.assertFalse(result.approved)
        self.assertEqual(result.reason, "EXPIRED")
        change_request = self.db.get(ChangeRequest, self.change_request_id)
        self.assertEqual(change_request.status, ChangeRequestStatus.PENDING_OTP)
        self.assertEqual(change_request.version, 1)
        self.assertEqual(change_request.otp_failed_attempts, 0)
        self.assertEqual(len(list_audit_events(self.db, self.employee.id)), 1)

    def test_repeated_mismatch_escalates_to_manager(self) -> None:
        first = self._verify(wrong_code(self.code))
        self.assertFalse(first.approved)
        self.assertEqual(first.reason, "MISMATCH")
        self.assertEqual(first.attempts_remaining, 1)

        second = self._verify(wrong_code(self.code), minutes=2)
        self.assertEqual(second.reason, "ESCALATED")
        self.assertEqual(second.status, ChangeRequestStatus.PENDING_MANAGER)

        change_request = self.db.get(ChangeRequest, self.change_request_id)
        self.assertEqual(change_request.otp_failed_attempts, 2)
        self.assertIsNone(change_request.otp_hash)
        self.assertIn("CODE_ESCALATED", self.notifier.kinds())

        with self.assertRaises(StateConflictError):
            self._verify(self.code, minutes=3)

    def test_other_employees_cannot_verify(self) -> None:
        with self.assertRaises(NotFoundError):
            self._verify(self.code, employee_id=self.manager.id)

    def test_sweep_expires_stale_requests_after_grace(self) -> None:
        self.assertEqual(
            self.adjudicator.expire_stale_code_requests(self.db, now_utc=NOW + timedelta(minutes=30)),
            0,
        )

        expired = self.adjudicator.expire_stale_code_requests(self.db, now_utc=NOW + timedelta(hours=2))

        self.assertEqual(expired, 1)
        change_request = self.db.get(ChangeRequest, self.change_request_id)
        self.assertEqual(change_request.status, ChangeRequestStatus.EXPIRED)
        events = list_audit_events(self.db, self.employee.id)
        self.assertEqual(events[-1].action, "CHANGE_CODE_EXPIRED")
        self.assertEqual(events[-1].decision, AuditDecision.BLOCK)
        with self.assertRaises(StateConflictError):
            self._verify(self.code, minutes=121)

    def test_stale_version_loses_the_race(self) -> None:
        change_request = self.db.get(ChangeRequest, self.change_request_id)
        self.db.execute(
            update(ChangeRequest)
            .where(ChangeRequest.id == change_request.id)
            .values(version=ChangeRequest.version + 1)
            .execution_options(synchronize_session=False)
        )

        with self.assertRaises(StateConflictError) as ctx:
            _transition(db=self.db, change_request=change_request, to_status=ChangeRequestStatus.APPROVED, now_utc=NOW)
        self.assertEqual(ctx.exception.code, "CHANGE_REQUEST_CONFLICT")


class BrokenCollaboratorTests(AdjudicationTestCase):
    def _adjudicator(self, *, verdict_provider=None, geo_locator=None) -> ChangeAdjudicator:  # type: ignore[no-untyped-def]
        return ChangeAdjudicator(
            verdict_provider=verdict_provider or self.verdicts,
            geo_locator=geo_locator or StaticGeoLocator(),
            notifier=self.notifier,
        )

    def _evaluate_with(self, adjudicator: ChangeAdjudicator):  # type: ignore[no-untyped-def]
        return adjudicator.evaluate(
            self.db,
            employee_id=self.employee.id,
            context=_address_change(ip=PUBLIC_IP),
            now_utc=NOW,
        )

    def test_truncated_verdict_response_falls_back_to_score(self) -> None:
        adjudicator = self._adjudicator(
            verdict_provider=HttpVerdictProvider(url="http://verdicts.internal/classify"),
        )

        with patch("urllib.request.urlopen", side_effect=http.client.IncompleteRead(b"{")):
            result = self._evaluate_with(adjudicator)

        self.assertEqual(result.verdict, Verdict.NONE)
        self.assertEqual(result.codes, ["UNKNOWN_IP"])
        self.assertEqual(result.path, VerificationPath.OTP_REQUIRED)
        self.assertEqual(result.status, ChangeRequestStatus.PENDING_OTP)

    def test_garbled_geolocation_response_scores_as_unknown_location(self) -> None:
        adjudicator = self._adjudicator(
            geo_locator=HttpGeoLocator(url_template="http://geo.internal/json/{ip}"),
        )

        with patch("urllib.request.urlopen", side_effect=http.client.BadStatusLine("garbage")):
            result = self._evaluate_with(adjudicator)

        self.assertEqual(result.path, VerificationPath.OTP_REQUIRED)
        risk_event = self.db.get(RiskEvent, result.risk_event_id)
        self.assertEqual(risk_event.geo["country_code"], GeoInfo.unknown().country_code)

    def test_unexpected_collaborator_errors_are_contained(self) -> None:
        class _ExplodingLocator:
            def lookup(self, ip):  # type: ignore[no-untyped-def]
                raise RuntimeError("resolver crashed")

        self.verdicts.error = KeyError("verdict")
        adjudicator = self._adjudicator(geo_locator=_ExplodingLocator())

        result = self._evaluate_with(adjudicator)

        self.assertEqual(result.verdict, Verdict.NONE)
        self.assertEqual(result.path, VerificationPath.OTP_REQUIRED)
        self.assertEqual(self._count(RiskEvent), 1)


class ManagerDecisionTests(AdjudicationTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.change_request_id = self._evaluate(_risky_bank_change()).change_request_id

    def _decide(self, *, approve: bool, approver_id: int | None = None):  # type: ignore[no-untyped-def]
        return self.adjudicator.decide(
            self.db,
            change_request_id=self.change_request_id,
            approver_id=approver_id or self.manager.id,
            approve=approve,
            note="checked by phone",
            now_utc=NOW + timedelta(minutes=15),
        )

    def test_approval_applies_change(self) -> None:
        result = self._decide(approve=True)

        self.assertEqual(result.status, ChangeRequestStatus.APPROVED)
        self.assertEqual(self.employee.bank_routing_number, "111000025")
        self.assertEqual(self.employee.bank_account_number, "99887766")
        self.assertIn("phone-77", self.employee.known_device_ids)
        change_request = self.db.get(ChangeRequest, self.change_request_id)
        self.assertEqual(change_request.reviewed_by, self.manager.id)
        self.assertEqual(change_request.review_note, "checked by phone")

    def test_denial_keeps_details_and_blocks(self) -> None:
        result = self._decide(approve=False)

        self.assertEqual(result.status, ChangeRequestStatus.DENIED)
        self.assertEqual(self.employee.bank_routing_number, "021000021")
        self.assertEqual(list_audit_events(self.db, self.employee.id)[-1].decision, AuditDecision.BLOCK)
        self.assertEqual(self._count(FraudCase), 0)

    def test_terminal_requests_reject_further_decisions(self) -> None:
        self._decide(approve=False)

        with self.assertRaises(StateConflictError):
            self._decide(approve=True, approver_id=self.second_manager.id)

    def test_regular_employees_cannot_decide(self) -> None:
        colleague = add_employee(self.db, full_name="Casey Wong")

        with self.assertRaises(ForbiddenError):
            self._decide(approve=True, approver_id=colleague.id)

    def test_approvers_cannot_decide_their_own_request(self) -> None:
        context = ChangeContext(
            change_type=ChangeType.BANK_ACCOUNT,
            ip=UNKNOWN_IP,
            device_id="phone-88",
            new_routing_number="111000025",
            new_account_number="44556677",
        )
        own_request_id = self._evaluate(context, employee_id=self.manager.id).change_request_id

        with self.assertRaises(ForbiddenError):
            self.adjudicator.decide(
                self.db,
                change_request_id=own_request_id,
                approver_id=self.manager.id,
                approve=True,
                now_utc=NOW,
            )

    def test_frozen_account_blocks_approval_but_not_denial(self) -> None:
        freeze_employee(self.db, employee_id=self.employee.id, actor_id=self.second_manager.id, now_utc=NOW)

        with self.assertRaises(AccountFrozenError):
            self._decide(approve=True)
        self.assertEqual(
            self.db.get(ChangeRequest, self.change_request_id).status,
            ChangeRequestStatus.PENDING_MANAGER,
        )

        self.assertEqual(self._decide(approve=False).status, ChangeRequestStatus.DENIED)


if __name__ == "__main__":
    unittest.main()
