from __future__ import annotations

from typing import Optional, Sequence

from .error_codes import ErrorCode
from .logging_utils import _automation_event
from .ports import DEFAULT_TECHNIQUES, Technique

# Run-scoped failures: every later action would run against a broken session
# or without a listing to return to.
FATAL_ERROR_CODES = {
    ErrorCode.SESSION_LOST,
    ErrorCode.LISTING_NAVIGATION,
}

ITEM_LEVEL_ERROR_CODES = {
    ErrorCode.NAVIGATION,
    ErrorCode.VERIFICATION,
    ErrorCode.ITEM_OPEN,
    ErrorCode.PROCESSOR,
}

MAX_BACKOFF_SECONDS = 30.0


def compute_backoff_seconds(attempt_index: int, base_delay: float) -> float:
    """Return the linear backoff after the given attempt (1-based), capped."""

    if base_delay <= 0:
        return 0.0
    return float(min(max(1, attempt_index) * base_delay, MAX_BACKOFF_SECONDS))


def technique_for_attempt(
    attempt_index: int, techniques: Sequence[Technique] = DEFAULT_TECHNIQUES
) -> Technique:
    """Return the activation technique for the given attempt (1-based).

    Attempts beyond the end of ``techniques`` keep using the last one.
    """

    if not techniques:
        raise ValueError("at least one technique is required")
    index = min(max(1, attempt_index), len(techniques)) - 1
    return techniques[index]


def decide_continue(
    error_code: Optional[str],
    *,
    continue_on_error: bool,
    item_id: Optional[str] = None,
) -> bool:
    """Decide whether the workflow loop proceeds after a failed item."""

    code = (error_code or "").strip()
    if code in FATAL_ERROR_CODES:
        _automation_event(
            "state",
            phase="continue_decision",
            kind="fatal",
            error_code=code,
            item_id=item_id,
            will_continue=False,
        )
        return False

    kind = "item_level" if code in ITEM_LEVEL_ERROR_CODES else (
        "unknown" if code else "missing_error_code"
    )
    _automation_event(
        "state",
        phase="continue_decision",
        kind=kind,
        error_code=code or None,
        item_id=item_id,
        continue_on_error=continue_on_error,
        will_continue=continue_on_error,
    )
    return continue_on_error


__all__ = [
    "FATAL_ERROR_CODES",
    "ITEM_LEVEL_ERROR_CODES",
    "compute_backoff_seconds",
    "decide_continue",
    "technique_for_attempt",
]
