from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from functools import lru_cache
from typing import Any, Protocol

from payguard.models import Employee
from payguard.settings import get_settings, is_smtp_configured

logger = logging.getLogger("payguard.notifications")

NOTIFICATION_SUBJECTS: dict[str, str] = {
    "CHANGE_APPROVED": "Your payroll details were updated",
    "CHANGE_PENDING_REVIEW": "Your payroll change is awaiting review",
    "CHANGE_BLOCKED": "A payroll change on your account was blocked",
    "CHANGE_DENIED": "Your payroll change was denied",
    "CODE_ESCALATED": "Your payroll change was sent for manual review",
    "ACCOUNT_FROZEN": "Your payroll account has been frozen",
    "PAYROLL_HELD": "Your pay for this cycle is on hold",
    "BASELINE_SET": "Your payroll details were saved",
    "ACCOUNT_UNFROZEN": "Your payroll account has been unfrozen",
    "BANK_DETAILS_RESET": "Your bank details were reset by security staff",
}


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str


class Notifier(Protocol):
    def send_one_time_code(self, *, employee: Employee, code: str, expires_minutes: int) -> None: ...

    def notify_employee(self, *, employee: Employee, kind: str, details: dict[str, Any]) -> None: ...


def _render_details(details: dict[str, Any]) -> str:
    lines = [f"{key}: {value}" for key, value in sorted(details.items()) if value not in (None, "")]
    return "\n".join(lines)


def _build_code_message(employee: Employee, code: str, expires_minutes: int) -> NotificationMessage:
    app_name = get_settings().app_name
    body = (
        f"Hi {employee.full_name},\n\n"
        "A request was made to change your payroll details. Use this code to confirm it:\n\n"
        f"    {code}\n\n"
        f"The code expires in {expires_minutes} minutes. If you did not start this change, "
        "contact HR immediately.\n"
    )
    return NotificationMessage(
        recipients=[employee.email],
        subject=f"{app_name} verification code",
        body=body,
    )


def _build_employee_message(employee: Employee, kind: str, details: dict[str, Any]) -> NotificationMessage:
    subject = NOTIFICATION_SUBJECTS.get(kind, "Payroll security notice")
    body = f"Hi {employee.full_name},\n\n{subject}.\n\n{_render_details(details)}\n"
    return NotificationMessage(recipients=[employee.email], subject=subject, body=body)


class LogNotifier:
    """Development notifier: writes messages to the log instead of sending them."""

    def send_one_time_code(self, *, employee: Employee, code: str, expires_minutes: int) -> None:
        logger.info(
            "one_time_code_issued_placeholder_send",
            extra={
                "employee_id": employee.id,
                "recipients": [employee.email],
                "expires_minutes": expires_minutes,
                "dev_code": code,
            },
        )

    def notify_employee(self, *, employee: Employee, kind: str, details: dict[str, Any]) -> None:
        message = _build_employee_message(employee, kind, details)
        logger.info(
            "employee_notification_placeholder_send",
            extra={
                "employee_id": employee.id,
                "kind": kind,
                "subject": message.subject,
                "recipients": message.recipients,
            },
        )


class SmtpNotifier:
    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str | None,
        smtp_password: str | None,
        smtp_from: str,
        smtp_use_tls: bool = True,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password or ""
        self.smtp_from = smtp_from
        self.smtp_use_tls = smtp_use_tls

    def _send(self, message: NotificationMessage) -> None:
        recipients = [item for item in message.recipients if item]
        if not recipients:
            logger.info("email_channel_skip_no_recipients", extra={"subject": message.subject})
            return

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_password)
            smtp_client.send_message(email_message)

    def send_one_time_code(self, *, employee: Employee, code: str, expires_minutes: int) -> None:
        self._send(_build_code_message(employee, code, expires_minutes))

    def notify_employee(self, *, employee: Employee, kind: str, details: dict[str, Any]) -> None:
        self._send(_build_employee_message(employee, kind, details))


def safe_send_code(notifier: Notifier, *, employee: Employee, code: str, expires_minutes: int) -> bool:
    try:
        notifier.send_one_time_code(employee=employee, code=code, expires_minutes=expires_minutes)
    except Exception:
        logger.exception("one_time_code_send_failed", extra={"employee_id": employee.id})
        return False
    return True


def safe_notify(notifier: Notifier, *, employee: Employee, kind: str, details: dict[str, Any] | None = None) -> bool:
    try:
        notifier.notify_employee(employee=employee, kind=kind, details=dict(details or {}))
    except Exception:
        logger.exception(
            "employee_notification_send_failed",
            extra={"employee_id": employee.id, "kind": kind},
        )
        return False
    return True


def build_notifier() -> Notifier:
    settings = get_settings()
    if not is_smtp_configured():
        return LogNotifier()
    return SmtpNotifier(
        smtp_host=str(settings.smtp_host),
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_from=settings.smtp_from,
    )


@lru_cache
def get_notifier() -> Notifier:
    return build_notifier()
