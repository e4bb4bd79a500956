# User value: This test keeps recovery decisions predictable so users and ops see consistent retry behavior.
import unittest

from digitizer.errors import ErrorKind, ExternalServiceError, ValidationError
from digitizer.recovery_policy import (
    FAIL_FINAL,
    RETRY_WITH_BACKOFF,
    RETRYABLE_BY_KIND,
    decide_for_exception,
    decide_recovery_action,
)


class RecoveryPolicyUnitTests(unittest.TestCase):
    def test_every_kind_has_a_retry_rule(self):
        self.assertEqual(set(RETRYABLE_BY_KIND), set(ErrorKind))

    def test_transient_error_retries_while_attempts_remain(self):
        decision = decide_recovery_action(kind=ErrorKind.EXTERNAL_SERVICE, attempts_made=1, max_attempts=3)
        self.assertEqual(decision.action, RETRY_WITH_BACKOFF)
        self.assertEqual(decision.reason, "TRANSIENT")
        self.assertTrue(decision.retry_allowed)
        self.assertFalse(decision.exhausted)

    def test_last_attempt_is_final_and_exhausted(self):
        decision = decide_recovery_action(kind=ErrorKind.INFRA_CONNECT, attempts_made=3, max_attempts=3)
        self.assertEqual(decision.action, FAIL_FINAL)
        self.assertEqual(decision.reason, "ATTEMPTS_EXHAUSTED")
        self.assertTrue(decision.is_final)
        self.assertTrue(decision.exhausted)

    def test_non_retryable_fails_on_first_attempt(self):
        decision = decide_recovery_action(kind=ErrorKind.VALIDATION, attempts_made=1, max_attempts=3)
        self.assertEqual(decision.action, FAIL_FINAL)
        self.assertEqual(decision.reason, "NON_RETRYABLE")
        self.assertFalse(decision.retry_allowed)
        self.assertFalse(decision.exhausted)

    def test_decide_for_exception_returns_error_code(self):
        decision, code = decide_for_exception(
            ExternalServiceError("Google Cloud Vision", "No text found in the image."),
            attempts_made=1,
            max_attempts=3,
        )
        self.assertTrue(decision.retry_allowed)
        self.assertEqual(code, "EXTERNAL_OCR")

        decision, code = decide_for_exception(ValidationError("bad"), attempts_made=1, max_attempts=3)
        self.assertTrue(decision.is_final)
        self.assertEqual(code, "VALIDATION_FAILED")


if __name__ == "__main__":
    unittest.main()
