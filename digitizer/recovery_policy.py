# User value: This module makes retry/fail decisions explicit so failures are explainable to users and ops.
from __future__ import annotations

from dataclasses import dataclass

from digitizer.error_catalog import classify_error
from digitizer.errors import ErrorKind

RETRY_WITH_BACKOFF = "retry_with_backoff"
FAIL_FINAL = "fail_final"

# Must list every ErrorKind.
RETRYABLE_BY_KIND = {
    ErrorKind.VALIDATION: False,
    ErrorKind.NOT_FOUND: False,
    ErrorKind.CONFLICT: False,
    ErrorKind.EXTERNAL_SERVICE: True,
    ErrorKind.INFRA_CONNECT: True,
}


@dataclass(frozen=True)
class RecoveryDecision:
    action: str
    reason: str
    attempts_made: int
    max_attempts: int

    @property
    def retry_allowed(self) -> bool:
        return self.action == RETRY_WITH_BACKOFF

    @property
    def is_final(self) -> bool:
        return self.action == FAIL_FINAL

    @property
    def exhausted(self) -> bool:
        return self.is_final and self.attempts_made >= self.max_attempts


def is_retryable(kind: ErrorKind) -> bool:
    return RETRYABLE_BY_KIND[kind]


def decide_recovery_action(*, kind: ErrorKind, attempts_made: int, max_attempts: int) -> RecoveryDecision:
    attempts = max(0, int(attempts_made))
    budget = max(1, int(max_attempts))

    if not is_retryable(kind):
        return RecoveryDecision(FAIL_FINAL, "NON_RETRYABLE", attempts, budget)
    if attempts >= budget:
        return RecoveryDecision(FAIL_FINAL, "ATTEMPTS_EXHAUSTED", attempts, budget)
    return RecoveryDecision(RETRY_WITH_BACKOFF, "TRANSIENT", attempts, budget)


def decide_for_exception(exc: BaseException, *, attempts_made: int, max_attempts: int) -> tuple[RecoveryDecision, str]:
    """Classify `exc` and decide what happens to the attempt; returns (decision, error_code)."""
    kind, error_code, _ = classify_error(exc)
    return decide_recovery_action(kind=kind, attempts_made=attempts_made, max_attempts=max_attempts), error_code
