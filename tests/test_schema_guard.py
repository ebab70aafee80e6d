from __future__ import annotations

import unittest
from unittest.mock import patch

from payguard.services.schema_guard import (
    REQUIRED_ENUM_VALUES,
    REQUIRED_TABLE_COLUMNS,
    REQUIRED_UNIQUE_CONSTRAINTS,
    verify_runtime_schema,
)


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        unique_by_table: dict[str, set[str]],
        enums: list[dict[str, object]],
    ):
        self._columns_by_table = columns_by_table
        self._unique_by_table = unique_by_table
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._unique_by_table.get(table_name, set())]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


def _complete_enums() -> list[dict[str, object]]:
    return [{"name": name, "labels": sorted(values)} for name, values in REQUIRED_ENUM_VALUES.items()]


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_schema_matches(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={name: set(columns) | {"extra"} for name, columns in REQUIRED_TABLE_COLUMNS.items()},
            unique_by_table={name: set(names) for name, names in REQUIRED_UNIQUE_CONSTRAINTS.items()},
            enums=_complete_enums(),
        )

        with patch("payguard.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.to_dict()["issue_count"], 0)

    def test_verify_runtime_schema_reports_drift(self) -> None:
        columns = {name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()}
        columns["change_requests"].discard("version")
        columns["audit_events"].discard("previous_hash")
        enums = _complete_enums()
        enums[0] = {"name": "change_request_status", "labels": ["PENDING_OTP", "APPROVED", "DENIED"]}
        fake_inspector = _FakeInspector(
            columns_by_table=columns,
            unique_by_table={"payrolls": {"uq_payrolls_employee_cycle"}},
            enums=enums,
        )

        with patch("payguard.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine(""))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_COLUMNS:change_requests:version", result.issues)
        self.assertIn("MISSING_COLUMNS:audit_events:previous_hash", result.issues)
        self.assertIn(
            "MISSING_UNIQUE_CONSTRAINTS:audit_events:uq_audit_events_employee_previous_hash",
            result.issues,
        )
        self.assertTrue(
            any(item.startswith("MISSING_ENUM_VALUES:change_request_status:EXPIRED") for item in result.issues)
        )
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_missing_enum_type_is_only_a_warning(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={name: set(columns) for name, columns in REQUIRED_TABLE_COLUMNS.items()},
            unique_by_table={name: set(names) for name, names in REQUIRED_UNIQUE_CONSTRAINTS.items()},
            enums=[],
        )

        with patch("payguard.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertIn("ENUM_NOT_FOUND:audit_decision", result.warnings)


if __name__ == "__main__":
    unittest.main()
