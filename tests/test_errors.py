import unittest

import httpx
import openai
from sqlalchemy import exc as sa_exc

from errors import AppError, error_response, map_auth_error, map_exception


class AuthFailure(Exception):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class AppErrorTests(unittest.TestCase):
    def test_catalogue_defaults(self) -> None:
        err = AppError("NS-AI-002")
        self.assertTrue(err.retryable)
        self.assertEqual(err.status, 429)
        self.assertIn("[NS-AI-002]", str(err))

    def test_unknown_code_falls_back(self) -> None:
        err = AppError("NS-NOPE-999")
        self.assertEqual(err.code, "NS-SYS-001")
        self.assertEqual(error_response("NS-NOPE-999")["error"]["code"], "NS-SYS-001")

    def test_custom_message(self) -> None:
        body = error_response("NS-VAL-001", "Pick an exam date.")
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["message"], "Pick an exam date.")


class MapExceptionTests(unittest.TestCase):
    def test_database_errors(self) -> None:
        down = sa_exc.OperationalError("SELECT 1", {}, Exception("connection refused"))
        self.assertEqual(map_exception(down).code, "NS-DB-001")
        self.assertEqual(map_exception(sa_exc.SQLAlchemyError("boom")).code, "NS-DB-002")

    def test_openai_errors(self) -> None:
        req = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        self.assertEqual(map_exception(openai.APITimeoutError(request=req)).code, "NS-AI-004")
        self.assertEqual(map_exception(openai.APIConnectionError(request=req)).code, "NS-AI-005")

    def test_passthrough_and_unknown(self) -> None:
        err = AppError("NS-CRS-001")
        self.assertIs(map_exception(err), err)
        mapped = map_exception(KeyError("x"))
        self.assertEqual(mapped.code, "NS-SYS-001")
        self.assertEqual(mapped.details["error"], "KeyError")


class MapAuthErrorTests(unittest.TestCase):
    def test_messages(self) -> None:
        cases = {
            "Invalid login credentials": "NS-AUTH-001",
            "Email not confirmed": "NS-AUTH-002",
            "User already registered": "NS-AUTH-010",
            "Password should be at least 8 characters": "NS-AUTH-011",
            "Unable to validate email address: invalid format": "NS-AUTH-012",
            "Email link is invalid or has expired": "NS-AUTH-021",
        }
        for message, code in cases.items():
            with self.subTest(message=message):
                self.assertEqual(map_auth_error(AuthFailure(message)).code, code)

    def test_status_429(self) -> None:
        self.assertEqual(map_auth_error(AuthFailure("slow down", status=429)).code, "NS-AUTH-020")

    def test_unrecognised(self) -> None:
        self.assertEqual(map_auth_error(AuthFailure("teapot")).code, "NS-AUTH-099")


if __name__ == "__main__":
    unittest.main()
