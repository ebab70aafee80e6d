from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from payguard.clock import ensure_utc, utc_now
from payguard.models import ChangeType, Employee, RiskEvent
from payguard.services.geolocation import GeoInfo
from payguard.settings import get_local_timezone

UNKNOWN_DEVICE_SENTINEL = "unknown"

VELOCITY_WINDOW = timedelta(minutes=10)
VELOCITY_HIGH_ATTEMPTS = 5
VELOCITY_MEDIUM_ATTEMPTS = 3
OFF_HOURS_START = 23
OFF_HOURS_END = 6
NEW_ACCOUNT_AGE = timedelta(days=30)
RAPID_CHANGE_WINDOW = timedelta(minutes=5)
HIGH_RISK_SCORE = 70
HIGH_RISK_WINDOW = timedelta(hours=1)
HIGH_RISK_BURST_EVENTS = 3
SHARED_ROUTING_WINDOW = timedelta(days=7)
SHARED_ROUTING_EMPLOYEES = 2
HISTORY_WINDOW = timedelta(days=30)
HISTORY_AVERAGE_THRESHOLD = 60
SHORT_SESSION_SECONDS = 60

SIGNAL_WEIGHTS: dict[str, int] = {
    "UNKNOWN_IP": 30,
    "UNKNOWN_DEVICE": 30,
    "VELOCITY_HIGH": 40,
    "VELOCITY_MEDIUM": 15,
    "OFF_HOURS": 20,
    "NEW_ACCOUNT": 15,
    "RAPID_CHANGE_AFTER_LOGIN": 30,
    "HIGH_RISK_BURST": 40,
    "SHARED_ROUTING_NUMBER": 35,
    "PROXY_OR_HOSTING": 35,
    "GEO_COUNTRY_MISMATCH": 40,
    "GEO_REGION_MISMATCH": 20,
    "TRUSTED_LOCATION": -10,
    "ROUTING_CHANGED": 40,
    "ACCOUNT_CHANGED": 20,
    "HISTORICAL_RISK": 10,
    "CLIPBOARD_PASTE_DETECTED": 10,
    "DIRECT_NAVIGATION": 10,
    "SHORT_SESSION": 10,
}


@dataclass(frozen=True, slots=True)
class ChangeContext:
    change_type: ChangeType
    ip: str
    device_id: str
    new_routing_number: str | None = None
    new_account_number: str | None = None
    new_bank_name: str | None = None
    new_address: dict[str, Any] = field(default_factory=dict)
    login_at: datetime | None = None
    # client-reported form behaviour
    clipboard_paste: bool = False
    direct_navigation: bool = False
    session_duration_seconds: int | None = None

    @property
    def action(self) -> str:
        return f"{self.change_type.value}_CHANGE_ATTEMPT"

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "ip": self.ip,
            "device_id": self.device_id,
            "new_bank_name": self.new_bank_name,
            "new_address_country": self.new_address.get("country"),
            "login_at": self.login_at.isoformat() if self.login_at else None,
            "clipboard_paste": self.clipboard_paste,
            "direct_navigation": self.direct_navigation,
            "session_duration_seconds": self.session_duration_seconds,
        }


@dataclass(frozen=True, slots=True)
class SignalResult:
    score: int
    codes: list[str]
    raw_score: int


def clamp_score(value: int) -> int:
    return max(0, min(100, value))


def count_recent_attempts(db: Session, employee_id: int, *, now_utc: datetime) -> int:
    return int(
        db.scalar(
            select(func.count(RiskEvent.id)).where(
                RiskEvent.employee_id == employee_id,
                RiskEvent.created_at >= now_utc - VELOCITY_WINDOW,
                RiskEvent.created_at <= now_utc,
            )
        )
        or 0
    )


def count_high_risk_events(
    db: Session,
    employee_id: int,
    *,
    now_utc: datetime,
    window: timedelta = HIGH_RISK_WINDOW,
    action: str | None = None,
) -> int:
    stmt = select(func.count(RiskEvent.id)).where(
        RiskEvent.employee_id == employee_id,
        RiskEvent.risk_score > HIGH_RISK_SCORE,
        RiskEvent.created_at >= now_utc - window,
        RiskEvent.created_at <= now_utc,
    )
    if action is not None:
        stmt = stmt.where(RiskEvent.action == action)
    return int(db.scalar(stmt) or 0)


def count_recent_routing_adopters(
    db: Session,
    routing_number: str,
    *,
    exclude_employee_id: int,
    now_utc: datetime,
) -> int:
    return int(
        db.scalar(
            select(func.count(func.distinct(Employee.id))).where(
                Employee.id != exclude_employee_id,
                Employee.bank_routing_number == routing_number,
                Employee.bank_updated_at >= now_utc - SHARED_ROUTING_WINDOW,
                Employee.bank_updated_at <= now_utc,
            )
        )
        or 0
    )


def average_recent_score(db: Session, employee_id: int, *, now_utc: datetime) -> float | None:
    value = db.scalar(
        select(func.avg(RiskEvent.risk_score)).where(
            RiskEvent.employee_id == employee_id,
            RiskEvent.created_at >= now_utc - HISTORY_WINDOW,
            RiskEvent.created_at <= now_utc,
        )
    )
    if value is None:
        return None
    return float(value)


def _is_off_hours(now_utc: datetime, tz: ZoneInfo) -> bool:
    local_hour = now_utc.astimezone(tz).hour
    return local_hour >= OFF_HOURS_START or local_hour < OFF_HOURS_END


def _reference_location(employee: Employee, context: ChangeContext) -> tuple[str, str]:
    if context.change_type == ChangeType.ADDRESS and context.new_address:
        country = context.new_address.get("country")
        state = context.new_address.get("state")
    else:
        country = employee.address_country
        state = employee.address_state
    return str(country or "").strip().upper(), str(state or "").strip().upper()


def evaluate_signals(
    db: Session,
    employee: Employee,
    context: ChangeContext,
    *,
    geo: GeoInfo | None = None,
    now_utc: datetime | None = None,
    tz: ZoneInfo | None = None,
) -> SignalResult:
    """Score one change attempt. Reads the event history, never writes.

    Signals are additive and recorded in evaluation order; the final score is
    clamped to [0, 100].
    """
    now = ensure_utc(now_utc or utc_now())
    local_tz = tz or get_local_timezone()
    geo_info = geo or GeoInfo.unknown()
    codes: list[str] = []

    def fire(code: str) -> None:
        codes.append(code)

    if context.ip not in (employee.known_ips or []):
        fire("UNKNOWN_IP")

    device_id = (context.device_id or "").strip()
    if device_id.lower() != UNKNOWN_DEVICE_SENTINEL and device_id not in (employee.known_device_ids or []):
        fire("UNKNOWN_DEVICE")

    recent_attempts = count_recent_attempts(db, employee.id, now_utc=now)
    if recent_attempts >= VELOCITY_HIGH_ATTEMPTS:
        fire("VELOCITY_HIGH")
    elif recent_attempts >= VELOCITY_MEDIUM_ATTEMPTS:
        fire("VELOCITY_MEDIUM")

    if _is_off_hours(now, local_tz):
        fire("OFF_HOURS")

    if employee.created_at is not None and now - ensure_utc(employee.created_at) < NEW_ACCOUNT_AGE:
        fire("NEW_ACCOUNT")

    if context.login_at is not None and now - ensure_utc(context.login_at) < RAPID_CHANGE_WINDOW:
        fire("RAPID_CHANGE_AFTER_LOGIN")

    if count_high_risk_events(db, employee.id, now_utc=now) >= HIGH_RISK_BURST_EVENTS:
        fire("HIGH_RISK_BURST")

    proposed_routing = (context.new_routing_number or "").strip()
    if proposed_routing:
        adopters = count_recent_routing_adopters(
            db,
            proposed_routing,
            exclude_employee_id=employee.id,
            now_utc=now,
        )
        if adopters >= SHARED_ROUTING_EMPLOYEES:
            fire("SHARED_ROUTING_NUMBER")

    if geo_info.proxy or geo_info.hosting:
        fire("PROXY_OR_HOSTING")

    reference_country, reference_state = _reference_location(employee, context)
    if geo_info.is_known and reference_country:
        if geo_info.country_code.upper() != reference_country:
            fire("GEO_COUNTRY_MISMATCH")
        elif reference_state and geo_info.region and geo_info.region.upper() != reference_state:
            fire("GEO_REGION_MISMATCH")
        elif not geo_info.proxy and not geo_info.hosting:
            fire("TRUSTED_LOCATION")

    if context.change_type == ChangeType.BANK_ACCOUNT and proposed_routing and employee.baseline_routing_number:
        if proposed_routing != employee.baseline_routing_number:
            fire("ROUTING_CHANGED")
        elif (
            employee.baseline_account_number
            and (context.new_account_number or "").strip() != employee.baseline_account_number
        ):
            fire("ACCOUNT_CHANGED")

    average = average_recent_score(db, employee.id, now_utc=now)
    if average is not None and average > HISTORY_AVERAGE_THRESHOLD:
        fire("HISTORICAL_RISK")

    if context.clipboard_paste:
        fire("CLIPBOARD_PASTE_DETECTED")
    if context.direct_navigation:
        fire("DIRECT_NAVIGATION")
    if context.session_duration_seconds is not None and context.session_duration_seconds < SHORT_SESSION_SECONDS:
        fire("SHORT_SESSION")

    raw_score = sum(SIGNAL_WEIGHTS[code] for code in codes)
    return SignalResult(score=clamp_score(raw_score), codes=codes, raw_score=raw_score)
