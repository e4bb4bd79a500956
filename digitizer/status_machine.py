from __future__ import annotations

import logging
from typing import Optional

from digitizer.contract import (
    RECORD_STATUS_PENDING,
    RECORD_STATUS_PROCESSING,
    RECORD_STATUS_COMPLETED,
    RECORD_STATUS_FAILED,
    TERMINAL_RECORD_STATUSES,
)

logger = logging.getLogger("digitizer.status_machine")

_ALLOWED = {
    None: {RECORD_STATUS_PENDING},
    RECORD_STATUS_PENDING: {
        RECORD_STATUS_PENDING,
        RECORD_STATUS_PROCESSING,
        RECORD_STATUS_FAILED,
    },
    RECORD_STATUS_PROCESSING: {
        RECORD_STATUS_PROCESSING,
        RECORD_STATUS_COMPLETED,
        RECORD_STATUS_FAILED,
    },
    RECORD_STATUS_COMPLETED: set(),
    RECORD_STATUS_FAILED: set(),
}


def _norm(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    s = str(status).strip().lower()
    return s or None


def is_terminal(status: Optional[str]) -> bool:
    current = _norm(status)
    return current in TERMINAL_RECORD_STATUSES


def is_allowed_transition(current: Optional[str], target: Optional[str]) -> bool:
    target_n = _norm(target)
    if not target_n:
        return True
    current_n = _norm(current)
    allowed = _ALLOWED.get(current_n)
    if allowed is None:
        logger.warning("status_unknown current=%s target=%s", current, target)
        return False
    return target_n in allowed
