from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from db_support import NOW, RecordingNotifier, add_employee, build_session_factory, build_sqlite_engine
from sqlalchemy import func, select

from payguard.audit import list_audit_events
from payguard.errors import NotFoundError, StateConflictError, ValidationError
from payguard.models import (
    ChangeRequest,
    ChangeRequestStatus,
    ChangeType,
    Payroll,
    PayrollCycle,
    PayrollCycleStatus,
    PayrollStatus,
    RiskEvent,
    VerificationPath,
)
from payguard.services import payroll as payroll_service
from payguard.services.payroll import (
    decide_payroll_status,
    get_payroll_stats,
    list_payrolls,
    release_payroll,
    retry_payroll_cycle,
    run_payroll_cycle,
    run_scheduled_payroll,
    scheduled_cycle_id,
)
from payguard.settings import get_settings

PERIOD_START = NOW - timedelta(days=14)


class PayrollTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_sqlite_engine()
        self.db = build_session_factory(self.engine)()
        self.alice = add_employee(self.db, full_name="Alice Moreno")
        self.bruno = add_employee(self.db, full_name="Bruno Diaz")
        self.chloe = add_employee(self.db, full_name="Chloe Park")
        add_employee(self.db, full_name="Former Staff", is_active=False)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _run(self, cycle_id: str = "2026-03-10", **kwargs):  # type: ignore[no-untyped-def]
        kwargs.setdefault("now_utc", NOW)
        return run_payroll_cycle(
            self.db,
            cycle_id=cycle_id,
            period_start=PERIOD_START,
            period_end=NOW,
            default_amount="2500",
            **kwargs,
        )

    def _payroll_count(self) -> int:
        return int(self.db.scalar(select(func.count(Payroll.id))) or 0)

    def _add_change_request(
        self,
        employee_id: int,
        *,
        status: ChangeRequestStatus,
        risk_score: int,
        resolved_at: datetime | None = None,
    ) -> ChangeRequest:
        change_request = ChangeRequest(
            employee_id=employee_id,
            change_type=ChangeType.BANK_ACCOUNT,
            new_routing_number="111000025",
            new_account_number="99887766",
            new_address={},
            status=status,
            path=VerificationPath.MANAGER_REQUIRED,
            risk_score=risk_score,
            reason_codes=["UNKNOWN_IP"],
            approvals=[],
            resolved_at=resolved_at,
            created_at=NOW - timedelta(hours=3),
            updated_at=NOW - timedelta(hours=3),
        )
        self.db.add(change_request)
        self.db.commit()
        return change_request

    def _add_risk_events(self, employee_id: int, count: int, *, action: str, score: int = 85) -> None:
        for index in range(count):
            self.db.add(
                RiskEvent(
                    employee_id=employee_id,
                    action=action,
                    risk_score=score,
                    risk_codes=["UNKNOWN_IP"],
                    ip="203.0.113.9",
                    device_id="phone-77",
                    geo={},
                    created_at=NOW - timedelta(minutes=10 + index * 5),
                )
            )
        self.db.commit()


class PayrollCycleTests(PayrollTestCase):
    def test_cycle_pays_every_active_employee(self) -> None:
        notifier = RecordingNotifier()
        result = self._run(notifier=notifier)

        self.assertFalse(result.skipped)
        self.assertEqual(result.status, PayrollCycleStatus.COMPLETED)
        self.assertEqual((result.paid, result.held, result.failed), (3, 0, 0))
        self.assertEqual(self._payroll_count(), 3)
        self.assertEqual(notifier.notices, [])

        payroll = list_payrolls(self.db, employee_id=self.alice.id)[0]
        self.assertEqual(payroll.amount, Decimal("2500.00"))
        self.assertEqual(payroll.paid_to_routing_number, "021000021")
        self.assertEqual(payroll.paid_to_bank_name, "First Hudson")

    def test_second_run_is_skipped(self) -> None:
        self._run()

        second = self._run(now_utc=NOW + timedelta(minutes=5))

        self.assertTrue(second.skipped)
        self.assertEqual(second.status, PayrollCycleStatus.COMPLETED)
        self.assertEqual(self._payroll_count(), 3)
        self.assertEqual(self.db.scalar(select(func.count(PayrollCycle.id))), 1)

    def test_pending_review_holds_pay(self) -> None:
        change_request = self._add_change_request(
            self.bruno.id,
            status=ChangeRequestStatus.PENDING_MULTI_APPROVAL,
            risk_score=90,
        )
        notifier = RecordingNotifier()

        result = self._run(notifier=notifier)

        self.assertEqual((result.paid, result.held), (2, 1))
        held = list_payrolls(self.db, status=PayrollStatus.HELD)[0]
        self.assertEqual(held.employee_id, self.bruno.id)
        self.assertEqual(held.flagged_change_request_id, change_request.id)
        self.assertEqual(held.risk_score_at_processing, 90)
        self.assertIn("awaiting manager approval", held.hold_reason)
        self.assertEqual(notifier.kinds(), ["PAYROLL_HELD"])

    def test_recent_high_risk_approval_triggers_cooling_off(self) -> None:
        self._add_change_request(
            self.alice.id,
            status=ChangeRequestStatus.APPROVED,
            risk_score=65,
            resolved_at=NOW - timedelta(hours=2),
        )
        self._add_change_request(
            self.bruno.id,
            status=ChangeRequestStatus.APPROVED,
            risk_score=65,
            resolved_at=NOW - timedelta(hours=30),
        )
        self._add_change_request(
            self.chloe.id,
            status=ChangeRequestStatus.APPROVED,
            risk_score=60,
            resolved_at=NOW - timedelta(hours=1),
        )

        self.assertEqual(decide_payroll_status(self.db, self.alice, now_utc=NOW).status, PayrollStatus.HELD)
        self.assertEqual(decide_payroll_status(self.db, self.bruno, now_utc=NOW).status, PayrollStatus.PAID)
        self.assertEqual(decide_payroll_status(self.db, self.chloe, now_utc=NOW).status, PayrollStatus.PAID)

    def test_burst_of_risky_bank_attempts_holds_pay(self) -> None:
        self._add_risk_events(self.alice.id, 3, action="BANK_ACCOUNT_CHANGE_ATTEMPT")
        self._add_risk_events(self.bruno.id, 3, action="ADDRESS_CHANGE_ATTEMPT")
        self._add_risk_events(self.chloe.id, 3, action="BANK_ACCOUNT_CHANGE_ATTEMPT", score=70)

        alice = decide_payroll_status(self.db, self.alice, now_utc=NOW)

        self.assertEqual(alice.status, PayrollStatus.HELD)
        self.assertIn("3 high-risk bank change attempts", alice.hold_reason)
        self.assertEqual(decide_payroll_status(self.db, self.bruno, now_utc=NOW).status, PayrollStatus.PAID)
        self.assertEqual(decide_payroll_status(self.db, self.chloe, now_utc=NOW).status, PayrollStatus.PAID)

    def test_pending_review_wins_over_cooling_off(self) -> None:
        self._add_change_request(
            self.alice.id,
            status=ChangeRequestStatus.APPROVED,
            risk_score=65,
            resolved_at=NOW - timedelta(hours=2),
        )
        pending = self._add_change_request(self.alice.id, status=ChangeRequestStatus.PENDING_MANAGER, risk_score=80)

        decision = decide_payroll_status(self.db, self.alice, now_utc=NOW)

        self.assertEqual(decision.flagged_change_request_id, pending.id)

    def test_invalid_cycle_inputs_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            run_payroll_cycle(
                self.db,
                cycle_id="bad-period",
                period_start=NOW,
                period_end=NOW,
                default_amount=100,
                now_utc=NOW,
            )
        with self.assertRaises(ValidationError):
            self._run(cycle_id="   ")
        with self.assertRaises(ValidationError):
            run_payroll_cycle(
                self.db,
                cycle_id="zero",
                period_start=PERIOD_START,
                period_end=NOW,
                default_amount="0",
                now_utc=NOW,
            )
        self.assertEqual(self.db.scalar(select(func.count(PayrollCycle.id))), 0)


class PartialCycleTests(PayrollTestCase):
    def test_failed_employee_leaves_cycle_partial_until_retry(self) -> None:
        original = payroll_service.decide_payroll_status
        failing_id = self.bruno.id

        def flaky(db, employee, *, now_utc):  # type: ignore[no-untyped-def]
            if employee.id == failing_id:
                raise RuntimeError("bank snapshot unavailable")
            return original(db, employee, now_utc=now_utc)

        with patch("payguard.services.payroll.decide_payroll_status", side_effect=flaky):
            result = self._run()

        self.assertEqual(result.status, PayrollCycleStatus.PARTIAL)
        self.assertEqual(result.failed_employee_ids, [failing_id])
        self.assertEqual(self._payroll_count(), 2)
        cycle = self.db.scalar(select(PayrollCycle))
        self.assertEqual(cycle.failed_count, 1)

        retried = retry_payroll_cycle(self.db, cycle_id="2026-03-10", now_utc=NOW + timedelta(minutes=10))

        self.assertEqual(retried.status, PayrollCycleStatus.COMPLETED)
        self.assertEqual([item.employee_id for item in retried.records], [failing_id])
        self.assertEqual(self._payroll_count(), 3)
        self.db.refresh(cycle)
        self.assertEqual((cycle.paid_count, cycle.held_count, cycle.failed_count), (3, 0, 0))

        with self.assertRaises(StateConflictError):
            retry_payroll_cycle(self.db, cycle_id="2026-03-10", now_utc=NOW + timedelta(minutes=20))

    def test_retry_unknown_cycle(self) -> None:
        with self.assertRaises(NotFoundError):
            retry_payroll_cycle(self.db, cycle_id="1999-01-01")


class PayrollReleaseTests(PayrollTestCase):
    def test_release_held_payroll(self) -> None:
        self._add_change_request(self.alice.id, status=ChangeRequestStatus.PENDING_MANAGER, risk_score=88)
        self._run()
        held = list_payrolls(self.db, status=PayrollStatus.HELD)[0]

        released = release_payroll(
            self.db,
            payroll_id=held.id,
            released_by=self.chloe.id,
            note="verified with employee",
            now_utc=NOW + timedelta(hours=1),
        )

        self.assertEqual(released.status, PayrollStatus.PAID)
        self.assertEqual(released.released_by, self.chloe.id)
        self.assertEqual(released.release_note, "verified with employee")
        self.assertEqual(list_audit_events(self.db, self.alice.id)[-1].action, "PAYROLL_RELEASED")

        with self.assertRaises(StateConflictError):
            release_payroll(self.db, payroll_id=held.id, released_by=self.chloe.id)

    def test_release_unknown_payroll(self) -> None:
        with self.assertRaises(NotFoundError):
            release_payroll(self.db, payroll_id=404, released_by=self.chloe.id)

    def test_stats_summarise_rows_and_cycles(self) -> None:
        self._add_change_request(self.alice.id, status=ChangeRequestStatus.PENDING_MANAGER, risk_score=88)
        self._run()

        stats = get_payroll_stats(self.db)

        self.assertEqual((stats["total"], stats["paid"], stats["held"], stats["pending"]), (3, 2, 1, 0))
        self.assertEqual(stats["recent_cycles"][0]["cycle_id"], "2026-03-10")


class ScheduledPayrollTests(PayrollTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.env = patch.dict(
            os.environ,
            {"LOCAL_TIMEZONE": "UTC", "PAYROLL_RUN_DAYS": "1,15", "PAYROLL_RUN_HOUR": "6"},
        )
        self.env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self.env.stop()
        get_settings.cache_clear()
        super().tearDown()

    def test_cycle_id_only_on_run_days_after_run_hour(self) -> None:
        self.assertEqual(scheduled_cycle_id(datetime(2026, 3, 15, 7, 0, tzinfo=timezone.utc)), "2026-03-15")
        self.assertIsNone(scheduled_cycle_id(datetime(2026, 3, 15, 5, 59, tzinfo=timezone.utc)))
        self.assertIsNone(scheduled_cycle_id(datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)))

    def test_scheduled_run_happens_once_per_day(self) -> None:
        run_at = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)

        first = run_scheduled_payroll(self.db, now_utc=run_at)
        second = run_scheduled_payroll(self.db, now_utc=run_at + timedelta(minutes=5))

        self.assertIsNotNone(first)
        self.assertEqual(first.cycle_id, "2026-04-01")
        self.assertIsNone(second)
        cycle = self.db.scalar(select(PayrollCycle))
        self.assertEqual(cycle.triggered_by, "scheduler")
        self.assertEqual(self._payroll_count(), 3)


if __name__ == "__main__":
    unittest.main()
