"""Act-then-verify loop for UI actions that must durably change remote state.

A click returning without error says nothing about whether the portal saved
anything. Every state-changing action goes through
:meth:`ActionVerificationLoop.perform_and_verify`: perform, wait for the view
to settle, check the effect, and escalate the activation technique
(normal, forced, programmatic) with a linear backoff until the effect is
observed or the attempts run out.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from . import config
from .error_codes import SessionLostError
from .logging_utils import _automation_event
from .ports import (
    DEFAULT_TECHNIQUES,
    ActionOutcome,
    Descriptor,
    DocumentPort,
    Technique,
    ensure_session,
)
from .retry_policy import compute_backoff_seconds, technique_for_attempt
from .utils import short_error_message

ActionFn = Callable[[Technique], bool]
VerifyFn = Callable[[], bool]
# Sleeps for the given seconds; returns False when the wait was cancelled.
WaitFn = Callable[[float], bool]


def _blocking_wait(seconds: float) -> bool:
    if seconds > 0:
        time.sleep(seconds)
    return True


@dataclass(frozen=True)
class ConfirmationSurface:
    """A dialog that must be acknowledged before an action takes effect."""

    surface: Descriptor
    confirm: Descriptor
    dismiss: Optional[Descriptor] = None


class ActionVerificationLoop:
    def __init__(
        self,
        port: DocumentPort,
        *,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        techniques: Sequence[Technique] = DEFAULT_TECHNIQUES,
        settle_timeout: Optional[float] = None,
        modal_timeout: Optional[float] = None,
        wait: Optional[WaitFn] = None,
    ) -> None:
        if not techniques:
            raise ValueError("at least one technique is required")
        self._port = port
        self._max_attempts = max(
            1, config.ACTION_MAX_ATTEMPTS if max_attempts is None else int(max_attempts)
        )
        self._base_delay = (
            config.ACTION_BASE_DELAY_SECONDS if base_delay is None else float(base_delay)
        )
        self._techniques = tuple(techniques)
        self._settle_timeout = (
            float(config.SETTLE_TIMEOUT_SECONDS) if settle_timeout is None else float(settle_timeout)
        )
        self._modal_timeout = (
            float(config.MODAL_TIMEOUT_SECONDS) if modal_timeout is None else float(modal_timeout)
        )
        self._wait = wait or _blocking_wait

    def perform_and_verify(
        self,
        action: ActionFn,
        verify: VerifyFn,
        max_attempts: Optional[int] = None,
        *,
        label: str = "action",
    ) -> ActionOutcome:
        """Perform ``action`` until ``verify`` confirms its effect.

        ``action`` receives the technique for the attempt and returns whether
        it believes it acted. Exceptions from either callable count as a failed
        attempt, except :class:`SessionLostError`, which propagates.
        """

        limit = self._max_attempts if max_attempts is None else max(1, int(max_attempts))
        technique: Optional[Technique] = None
        attempts_used = 0

        for attempt in range(1, limit + 1):
            technique = technique_for_attempt(attempt, self._techniques)
            attempts_used = attempt
            ensure_session(self._port, context=label)

            acted = self._call(action, technique, label=label, attempt=attempt, stage="perform")
            if acted:
                self._port.wait_settled(self._settle_timeout)
            confirmed = self._call(verify, None, label=label, attempt=attempt, stage="verify")

            _automation_event(
                "action",
                step="attempt",
                label=label,
                attempt=attempt,
                technique=technique.value,
                acted=acted,
                confirmed=confirmed,
            )
            if confirmed:
                return ActionOutcome(
                    attempted=True,
                    confirmed=True,
                    attempts_used=attempt,
                    technique=technique,
                )

            if attempt < limit:
                delay = compute_backoff_seconds(attempt, self._base_delay)
                if not self._wait(delay):
                    _automation_event("action", step="cancelled", label=label, attempt=attempt)
                    break

        _automation_event(
            "error",
            phase="verification",
            kind="not_confirmed",
            label=label,
            attempts=attempts_used,
        )
        return ActionOutcome(
            attempted=True,
            confirmed=False,
            attempts_used=attempts_used,
            technique=technique,
        )

    def activate_and_verify(
        self,
        control: Descriptor,
        verify: VerifyFn,
        max_attempts: Optional[int] = None,
    ) -> ActionOutcome:
        """Locate and activate ``control`` until ``verify`` holds."""

        def _action(technique: Technique) -> bool:
            ref = self._port.locate(control)
            if ref is None:
                _automation_event("action", step="control_missing", role=control.role, text=control.text)
                return False
            return bool(self._port.activate(ref, technique))

        return self.perform_and_verify(_action, verify, max_attempts, label=control.role)

    def perform_with_confirmation(
        self,
        action: ActionFn,
        verify: VerifyFn,
        confirmation: ConfirmationSurface,
        max_attempts: Optional[int] = None,
        *,
        label: str = "confirmed_action",
    ) -> ActionOutcome:
        """Perform an action that opens a confirmation dialog first.

        Each attempt: primary action, wait for the dialog, activate its confirm
        control (escalating techniques), wait for the dialog to close, then
        verify. A dialog that never shows up ends the call with
        ``confirmed=False`` after dismissing any stray dialog.
        """

        limit = self._max_attempts if max_attempts is None else max(1, int(max_attempts))
        technique: Optional[Technique] = None
        attempts_used = 0

        for attempt in range(1, limit + 1):
            technique = technique_for_attempt(attempt, self._techniques)
            attempts_used = attempt
            ensure_session(self._port, context=label)

            acted = self._call(action, technique, label=label, attempt=attempt, stage="perform")
            if not acted:
                _automation_event("action", step="primary_failed", label=label, attempt=attempt)
            elif not self._port.wait_for(
                confirmation.surface, present=True, timeout=self._modal_timeout
            ):
                _automation_event(
                    "error",
                    phase="verification",
                    kind="confirmation_missing",
                    label=label,
                    attempt=attempt,
                    timeout=self._modal_timeout,
                )
                self.dismiss_surface(confirmation)
                return ActionOutcome(
                    attempted=True,
                    confirmed=False,
                    attempts_used=attempt,
                    technique=technique,
                )
            else:
                confirm_outcome = self._confirm(confirmation)
                if not confirm_outcome.confirmed:
                    self.dismiss_surface(confirmation)
                else:
                    self._port.wait_settled(self._settle_timeout)
                    if self._call(verify, None, label=label, attempt=attempt, stage="verify"):
                        _automation_event(
                            "action",
                            step="confirmed",
                            label=label,
                            attempt=attempt,
                            technique=technique.value,
                            confirm_technique=(
                                confirm_outcome.technique.value if confirm_outcome.technique else None
                            ),
                        )
                        return ActionOutcome(
                            attempted=True,
                            confirmed=True,
                            attempts_used=attempt,
                            technique=technique,
                        )

            if attempt < limit:
                if not self._wait(compute_backoff_seconds(attempt, self._base_delay)):
                    break

        _automation_event(
            "error",
            phase="verification",
            kind="not_confirmed",
            label=label,
            attempts=attempts_used,
        )
        return ActionOutcome(
            attempted=True,
            confirmed=False,
            attempts_used=attempts_used,
            technique=technique,
        )

    def dismiss_surface(self, confirmation: ConfirmationSurface) -> bool:
        """Best-effort close of a confirmation dialog left on screen."""

        if not self._port.wait_for(confirmation.surface, present=True, timeout=0):
            return True
        if confirmation.dismiss is not None:
            ref = self._port.locate(confirmation.dismiss)
            if ref is not None:
                for technique in self._techniques:
                    if self._port.activate(ref, technique):
                        break
        closed = self._port.wait_for(
            confirmation.surface, present=False, timeout=self._modal_timeout
        )
        _automation_event("action", step="dismiss_surface", role=confirmation.surface.role, closed=closed)
        return closed

    def _confirm(self, confirmation: ConfirmationSurface) -> ActionOutcome:
        # The confirm control suffers the same overlay problems as the
        # primary control, so it escalates through the same techniques.
        def _surface_gone() -> bool:
            return self._port.wait_for(
                confirmation.surface, present=False, timeout=self._modal_timeout
            )

        return self.activate_and_verify(confirmation.confirm, _surface_gone)

    def _call(
        self,
        fn: Callable[..., bool],
        technique: Optional[Technique],
        *,
        label: str,
        attempt: int,
        stage: str,
    ) -> bool:
        try:
            return bool(fn(technique) if technique is not None else fn())
        except SessionLostError:
            raise
        except Exception as exc:  # noqa: BLE001
            _automation_event(
                "error",
                phase="verification",
                kind=f"{stage}_raised",
                label=label,
                attempt=attempt,
                error=short_error_message(exc),
            )
            return False


__all__ = [
    "ActionFn",
    "ActionVerificationLoop",
    "ConfirmationSurface",
    "VerifyFn",
    "WaitFn",
]
