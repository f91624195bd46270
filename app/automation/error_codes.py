"""Error taxonomy for workflow runs.

Codes are persisted in ``item_results.error_code`` and included in structured
logs so that a failed or aborted run can be explained after the fact. Keep the
string values stable; reporting groups on them.
"""

from __future__ import annotations


class ErrorCode:
    NAVIGATION = "navigation_failed"
    VERIFICATION = "verification_failed"
    SESSION_LOST = "session_lost"
    LISTING_NAVIGATION = "listing_navigation_failed"
    ITEM_OPEN = "item_open_failed"
    COLLABORATOR = "collaborator_failure"
    ALREADY_HANDLED = "already_handled"
    PROCESSOR = "processor_error"
    NOT_AUTHENTICATED = "not_authenticated"
    CANCELLED = "cancelled"
    INTERNAL = "internal_error"


class SessionLostError(RuntimeError):
    """The portal session is gone (foreign domain, login redirect, closed page)."""


class AuthenticationError(RuntimeError):
    """Logging into the portal failed or no credentials are configured."""


class ListingNavigationError(RuntimeError):
    """A listing page the scan needs could not be reached."""


class WorkflowStateError(RuntimeError):
    """A control operation is not valid for the current workflow state."""


__all__ = [
    "AuthenticationError",
    "ErrorCode",
    "ListingNavigationError",
    "SessionLostError",
    "WorkflowStateError",
]
