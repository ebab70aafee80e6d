from __future__ import annotations

import unittest
from datetime import timedelta

from db_support import NOW, add_employee, build_session_factory, build_sqlite_engine
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from payguard.audit import (
    GENESIS_HASH,
    append_audit_event,
    build_audit_event,
    compute_event_hash,
    ensure_audit_chain_intact,
    list_audit_events,
    recompute_hash,
    verify_audit_chain,
    verify_chain,
)
from payguard.errors import ChainIntegrityError
from payguard.models import AuditDecision, AuditEvent, ImmutableRecordError


def _detached_chain(length: int, *, employee_id: int = 7) -> list[AuditEvent]:
    events: list[AuditEvent] = []
    previous_hash = GENESIS_HASH
    for index in range(length):
        audit_event = build_audit_event(
            employee_id=employee_id,
            action=f"ACTION_{index}",
            decision=AuditDecision.CHALLENGE,
            reason_codes=["UNKNOWN_IP"],
            device_fingerprint="laptop-1",
            ip="10.0.0.5",
            previous_hash=previous_hash,
            created_at=NOW + timedelta(seconds=index),
        )
        events.append(audit_event)
        previous_hash = audit_event.current_hash
    return events


class AuditChainTests(unittest.TestCase):
    def test_detached_chain_verifies(self) -> None:
        result = verify_chain(7, _detached_chain(4))

        self.assertTrue(result.intact)
        self.assertEqual(result.event_count, 4)
        self.assertIsNone(result.broken_index)

    def test_empty_chain_is_intact(self) -> None:
        result = verify_chain(7, [])

        self.assertTrue(result.intact)
        self.assertEqual(result.event_count, 0)

    def test_tampering_any_field_reports_first_broken_index(self) -> None:
        tamperings = {
            "action": "CHANGE_APPROVED",
            "decision": AuditDecision.ALLOW,
            "reason_codes": [],
            "device_fingerprint": "other-device",
            "ip": "203.0.113.9",
            "created_at": NOW + timedelta(hours=1),
        }
        for field_name, value in tamperings.items():
            for index in range(4):
                with self.subTest(field=field_name, index=index):
                    events = _detached_chain(4)
                    setattr(events[index], field_name, value)

                    result = verify_chain(7, events)

                    self.assertFalse(result.intact)
                    self.assertEqual(result.broken_index, index)
                    self.assertEqual(result.reason, "CONTENT_TAMPERED")
                    self.assertIs(result.broken_event, events[index])

    def test_rewritten_hash_breaks_the_next_link(self) -> None:
        events = _detached_chain(3)
        events[1].action = "CHANGE_APPROVED"
        events[1].current_hash = recompute_hash(events[1])

        result = verify_chain(7, events)

        self.assertFalse(result.intact)
        self.assertEqual(result.broken_index, 2)
        self.assertEqual(result.reason, "BROKEN_LINK")

    def test_removed_event_breaks_the_chain(self) -> None:
        events = _detached_chain(3)
        del events[1]

        result = verify_chain(7, events)

        self.assertEqual(result.broken_index, 1)
        self.assertEqual(result.reason, "BROKEN_LINK")

    def test_separator_characters_cannot_shift_field_boundaries(self) -> None:
        common = {
            "employee_id": 7,
            "action": "CHANGE_EVALUATED",
            "decision": AuditDecision.CHALLENGE,
            "previous_hash": GENESIS_HASH,
            "created_at": NOW,
        }
        pairs = [
            ({"device_fingerprint": "a|b", "ip": "c", "reason_codes": []},
             {"device_fingerprint": "a", "ip": "b|c", "reason_codes": []}),
            ({"device_fingerprint": "d", "ip": "e", "reason_codes": ["X,Y"]},
             {"device_fingerprint": "d", "ip": "e", "reason_codes": ["X", "Y"]}),
        ]
        for left, right in pairs:
            with self.subTest(left=left, right=right):
                self.assertNotEqual(
                    compute_event_hash(**common, **left),
                    compute_event_hash(**common, **right),
                )


class PersistedAuditChainTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_sqlite_engine()
        self.db = build_session_factory(self.engine)()
        self.employee = add_employee(self.db)
        for minute, decision in enumerate((AuditDecision.CHALLENGE, AuditDecision.ALLOW, AuditDecision.BLOCK)):
            append_audit_event(
                self.db,
                employee_id=self.employee.id,
                action=f"STEP_{minute}",
                decision=decision,
                reason_codes=["UNKNOWN_IP"],
                device_fingerprint=" laptop-1 ",
                ip="10.0.0.5",
                now_utc=NOW + timedelta(minutes=minute),
            )
        self.db.commit()

    def tearDown(self) -> None:
        self.db.rollback()
        self.db.close()
        self.engine.dispose()

    def test_appends_link_to_previous_hash(self) -> None:
        events = list_audit_events(self.db, self.employee.id)

        self.assertEqual(len(events), 3)
        self.assertEqual(events[0].previous_hash, GENESIS_HASH)
        self.assertEqual(events[1].previous_hash, events[0].current_hash)
        self.assertEqual(events[2].previous_hash, events[1].current_hash)
        self.assertEqual(events[0].device_fingerprint, "laptop-1")
        self.assertTrue(verify_audit_chain(self.db, self.employee.id).intact)

    def test_chains_are_per_employee(self) -> None:
        other = add_employee(self.db, full_name="Sam Ortiz")
        first = append_audit_event(
            self.db,
            employee_id=other.id,
            action="BASELINE_SET",
            decision=AuditDecision.ALLOW,
            now_utc=NOW,
        )
        self.db.commit()

        self.assertEqual(first.previous_hash, GENESIS_HASH)

    def test_out_of_band_update_is_detected(self) -> None:
        self.db.execute(
            update(AuditEvent)
            .where(AuditEvent.action == "STEP_1")
            .values(ip="198.51.100.1")
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()

        result = verify_audit_chain(self.db, self.employee.id)

        self.assertFalse(result.intact)
        self.assertEqual(result.broken_index, 1)
        self.assertEqual(result.to_dict()["broken_event"]["action"], "STEP_1")
        with self.assertRaises(ChainIntegrityError) as ctx:
            ensure_audit_chain_intact(self.db, self.employee.id)
        self.assertEqual(ctx.exception.broken_index, 1)

    def test_orm_updates_are_rejected(self) -> None:
        audit_event = list_audit_events(self.db, self.employee.id)[0]
        audit_event.action = "REWRITTEN"

        with self.assertRaises(ImmutableRecordError):
            self.db.flush()

    def test_forked_chain_is_rejected(self) -> None:
        fork = build_audit_event(
            employee_id=self.employee.id,
            action="FORK",
            decision=AuditDecision.ALLOW,
            reason_codes=[],
            device_fingerprint="",
            ip="",
            previous_hash=GENESIS_HASH,
            created_at=NOW + timedelta(hours=2),
        )
        self.db.add(fork)

        with self.assertRaises(IntegrityError):
            self.db.flush()


if __name__ == "__main__":
    unittest.main()
