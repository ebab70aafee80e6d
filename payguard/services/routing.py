from __future__ import annotations

from payguard.models import VerificationPath
from payguard.services.verdicts import Verdict, parse_verdict

AUTO_APPROVE_BELOW = 30
OTP_UP_TO = 70


def route_verification(score: int, external_verdict: Verdict | str | None = None) -> VerificationPath:
    # An external "block" wins over any score; other verdicts do not move the bands.
    verdict = external_verdict if isinstance(external_verdict, Verdict) else parse_verdict(external_verdict)
    if verdict == Verdict.BLOCK:
        return VerificationPath.BLOCK
    if score < AUTO_APPROVE_BELOW:
        return VerificationPath.AUTO_APPROVE
    if score <= OTP_UP_TO:
        return VerificationPath.OTP_REQUIRED
    return VerificationPath.MANAGER_REQUIRED
