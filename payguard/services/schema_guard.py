from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from payguard.models import AuditDecision, ChangeRequestStatus, PayrollCycleStatus, PayrollStatus

EXPECTED_ALEMBIC_HEAD = "0001_initial"

REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "employees": {"id", "known_ips", "known_device_ids", "baseline_routing_number", "is_frozen"},
    "risk_events": {"id", "employee_id", "risk_score", "risk_codes", "created_at"},
    "change_requests": {"id", "status", "version", "otp_hash", "otp_expires_at", "approvals"},
    "audit_events": {"id", "employee_id", "previous_hash", "current_hash", "created_at"},
    "payroll_cycles": {"id", "cycle_id", "status", "failed_employee_ids"},
    "payrolls": {"id", "employee_id", "cycle_id", "status"},
    "alembic_version": {"version_num"},
}

# Without these the chain can fork and payroll can double-pay.
REQUIRED_UNIQUE_CONSTRAINTS: dict[str, set[str]] = {
    "audit_events": {"uq_audit_events_employee_previous_hash"},
    "payrolls": {"uq_payrolls_employee_cycle"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "change_request_status": {item.value for item in ChangeRequestStatus},
    "audit_decision": {item.value for item in AuditDecision},
    "payroll_status": {item.value for item in PayrollStatus},
    "payroll_cycle_status": {item.value for item in PayrollCycleStatus},
}


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


@dataclass(slots=True)
class _Findings:
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _missing(required: set[str], present: set[str]) -> str:
    return ",".join(sorted(required - present))


def _check_columns(inspector: Any, findings: _Findings) -> None:
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(column.get("name")) for column in inspector.get_columns(table_name)}
        except Exception as exc:
            findings.issues.append(f"TABLE_UNREADABLE:{table_name}:{type(exc).__name__}")
            continue
        missing = _missing(required_columns, present)
        if missing:
            findings.issues.append(f"MISSING_COLUMNS:{table_name}:{missing}")


def _check_unique_constraints(inspector: Any, findings: _Findings) -> None:
    for table_name, required_names in REQUIRED_UNIQUE_CONSTRAINTS.items():
        try:
            present = {str(item.get("name") or "") for item in inspector.get_unique_constraints(table_name)}
        except Exception as exc:
            findings.warnings.append(f"UNIQUE_INSPECTION_FAILED:{table_name}:{type(exc).__name__}")
            continue
        missing = _missing(required_names, present)
        if missing:
            findings.issues.append(f"MISSING_UNIQUE_CONSTRAINTS:{table_name}:{missing}")


def _check_enums(inspector: Any, findings: _Findings) -> None:
    try:
        reflected = inspector.get_enums() or []
    except Exception as exc:
        findings.warnings.append(f"ENUM_INSPECTION_FAILED:{type(exc).__name__}")
        return

    labels_by_enum = {
        str(item.get("name")).strip(): {str(label) for label in item.get("labels") or []}
        for item in reflected
        if str(item.get("name") or "").strip()
    }
    for enum_name, required_labels in REQUIRED_ENUM_VALUES.items():
        if enum_name not in labels_by_enum:
            # sqlite and non-native enums have nothing to reflect
            findings.warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = _missing(required_labels, labels_by_enum[enum_name])
        if missing:
            findings.issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{missing}")


def _check_alembic_version(engine: Engine, findings: _Findings) -> None:
    try:
        with engine.connect() as connection:
            raw = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except Exception as exc:
        findings.issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{type(exc).__name__}")
        return

    version = str(raw).strip() if raw is not None else ""
    if not version:
        findings.issues.append("ALEMBIC_VERSION_EMPTY")
    elif version != EXPECTED_ALEMBIC_HEAD:
        findings.warnings.append(f"ALEMBIC_VERSION_UNEXPECTED:{version}")


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    """Compare the live database against what the service needs before serving traffic.

    Issues fail the guard; warnings are reported on /health but do not block startup.
    """
    checked_at_utc = datetime.now(timezone.utc)
    findings = _Findings()
    inspector = inspect(engine)

    _check_columns(inspector, findings)
    _check_unique_constraints(inspector, findings)
    _check_enums(inspector, findings)
    _check_alembic_version(engine, findings)

    return SchemaGuardResult(
        ok=not findings.issues,
        checked_at_utc=checked_at_utc,
        issues=findings.issues,
        warnings=findings.warnings,
    )
