from __future__ import annotations

import enum
import http.client
import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request

from payguard.errors import DependencyError
from payguard.models import Employee
from payguard.settings import get_settings

logger = logging.getLogger("payguard.verdicts")


class Verdict(str, enum.Enum):
    BLOCK = "block"
    LIKELY_GENUINE = "likely-genuine"
    UNCERTAIN = "uncertain"
    NONE = "none"


_VERDICT_ALIASES = {
    "block": Verdict.BLOCK,
    "likely_fraud": Verdict.BLOCK,
    "likely-genuine": Verdict.LIKELY_GENUINE,
    "likely_genuine": Verdict.LIKELY_GENUINE,
    "uncertain": Verdict.UNCERTAIN,
    "none": Verdict.NONE,
}


def parse_verdict(raw: Any) -> Verdict:
    normalized = str(raw or "").strip().lower()
    return _VERDICT_ALIASES.get(normalized, Verdict.NONE)


class VerdictProvider(Protocol):
    def classify(
        self,
        *,
        employee: Employee,
        score: int,
        codes: Sequence[str],
        context: dict[str, Any],
    ) -> Verdict: ...


class NullVerdictProvider:
    def classify(
        self,
        *,
        employee: Employee,
        score: int,
        codes: Sequence[str],
        context: dict[str, Any],
    ) -> Verdict:
        return Verdict.NONE


class HttpVerdictProvider:
    """Posts the scored attempt to an external classifier.

    Expects a JSON object with a ``verdict`` key. Transport and payload
    errors surface as ``DependencyError``; the caller decides how to degrade.
    """

    def __init__(self, *, url: str, timeout_seconds: int = 5):
        self.url = url
        self.timeout_seconds = max(1, int(timeout_seconds))

    def classify(
        self,
        *,
        employee: Employee,
        score: int,
        codes: Sequence[str],
        context: dict[str, Any],
    ) -> Verdict:
        body = json.dumps(
            {
                "employee_id": employee.id,
                "risk_score": score,
                "risk_codes": list(codes),
                "context": context,
            },
            default=str,
        ).encode("utf-8")
        request = urllib_request.Request(
            url=self.url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib_request.urlopen(request, timeout=self.timeout_seconds) as response:
                payload = json.loads(response.read(8192).decode("utf-8", errors="ignore"))
        except (urllib_error.URLError, http.client.HTTPException, TimeoutError, OSError, ValueError) as exc:
            raise DependencyError(f"Verdict service unavailable: {exc}", dependency="verdict") from exc

        if not isinstance(payload, dict):
            raise DependencyError("Verdict service returned a malformed payload.", dependency="verdict")
        return parse_verdict(payload.get("verdict"))


def build_verdict_provider() -> VerdictProvider:
    settings = get_settings()
    url = (settings.verdict_service_url or "").strip()
    if not url:
        return NullVerdictProvider()
    return HttpVerdictProvider(url=url, timeout_seconds=settings.verdict_timeout_seconds)
