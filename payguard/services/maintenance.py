from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from payguard.clock import utc_now
from payguard.db import SessionLocal
from payguard.services.adjudication import ChangeAdjudicator, get_adjudicator
from payguard.services.notifications import Notifier, get_notifier
from payguard.services.payroll import CycleResult, run_scheduled_payroll

logger = logging.getLogger("payguard.worker")

MIN_INTERVAL_SECONDS = 15


@dataclass(frozen=True, slots=True)
class MaintenanceTickResult:
    expired_requests: int
    payroll: CycleResult | None

    @property
    def did_work(self) -> bool:
        return self.expired_requests > 0 or self.payroll is not None


def run_maintenance_tick(
    db: Session,
    *,
    adjudicator: ChangeAdjudicator,
    notifier: Notifier | None = None,
    now_utc: datetime | None = None,
) -> MaintenanceTickResult:
    """Sweep lapsed verification codes, then start today's payroll cycle if one is due."""
    now = now_utc or utc_now()
    expired_requests = adjudicator.expire_stale_code_requests(db, now_utc=now)
    payroll_result = run_scheduled_payroll(db, notifier=notifier, now_utc=now)
    return MaintenanceTickResult(expired_requests=expired_requests, payroll=payroll_result)


def run_maintenance_tick_with_session(now_utc: datetime | None = None) -> MaintenanceTickResult:
    db = SessionLocal()
    try:
        return run_maintenance_tick(
            db,
            adjudicator=get_adjudicator(),
            notifier=get_notifier(),
            now_utc=now_utc,
        )
    finally:
        db.close()


async def maintenance_worker_loop(stop_event: asyncio.Event, *, interval_seconds: int) -> None:
    interval = max(MIN_INTERVAL_SECONDS, int(interval_seconds))
    while not stop_event.is_set():
        try:
            result = await asyncio.to_thread(run_maintenance_tick_with_session)
        except Exception:
            # one bad tick must not stop the next cycle
            logger.exception("maintenance_worker_tick_failed")
        else:
            if result.did_work:
                logger.info(
                    "maintenance_worker_tick",
                    extra={
                        "expired_requests": result.expired_requests,
                        "payroll": result.payroll.to_dict() if result.payroll is not None else None,
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
