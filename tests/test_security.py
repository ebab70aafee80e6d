from __future__ import annotations

import json
import logging
import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from jose import jwt

from payguard.errors import ApiError
from payguard.logging_utils import JsonFormatter
from payguard.security import create_access_token, decode_token
from payguard.settings import get_settings


class AccessTokenTests(unittest.TestCase):
    def setUp(self) -> None:
        self.env = patch.dict(os.environ, {"JWT_SECRET": "unit-test-secret"})
        self.env.start()
        get_settings.cache_clear()

    def tearDown(self) -> None:
        self.env.stop()
        get_settings.cache_clear()

    def test_token_round_trip_keeps_login_time(self) -> None:
        logged_in_at = datetime.now(timezone.utc) - timedelta(hours=3)

        token, claims = create_access_token(employee_id=42, role="MANAGER", auth_time=logged_in_at)
        decoded = decode_token(token)

        self.assertEqual(decoded["sub"], "42")
        self.assertEqual(decoded["role"], "MANAGER")
        self.assertEqual(decoded["auth_time"], int(logged_in_at.timestamp()))
        self.assertLess(decoded["auth_time"], decoded["iat"])
        self.assertEqual(decoded["jti"], claims["jti"])

    def test_rejects_foreign_signature_and_unknown_role(self) -> None:
        token, claims = create_access_token(employee_id=7)
        forged = jwt.encode(claims, "some-other-secret", algorithm="HS256")
        bad_role = jwt.encode({**claims, "role": "ROOT"}, "unit-test-secret", algorithm="HS256")

        truncated = token.rsplit(".", 1)[0] + ".c2lnbmF0dXJl"
        for candidate in (forged, bad_role, truncated):
            with self.assertRaises(ApiError) as ctx:
                decode_token(candidate)
            self.assertEqual(ctx.exception.status_code, 401)
            self.assertEqual(ctx.exception.code, "INVALID_TOKEN")

    def test_expired_token_is_rejected(self) -> None:
        token, _claims = create_access_token(employee_id=7, expires_minutes=-1)

        with self.assertRaises(ApiError):
            decode_token(token)


class JsonFormatterTests(unittest.TestCase):
    def test_extra_fields_are_promoted_and_secrets_redacted(self) -> None:
        record = logging.LogRecord("payguard.test", logging.INFO, __file__, 1, "code_issued", (), None)
        record.change_request_id = 12
        record.code = "123456"
        record.account_number = "99887766"

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "code_issued")
        self.assertEqual(payload["logger"], "payguard.test")
        self.assertEqual(payload["change_request_id"], 12)
        self.assertEqual(payload["code"], "***")
        self.assertEqual(payload["account_number"], "***")
        self.assertNotIn("lineno", payload)


if __name__ == "__main__":
    unittest.main()
