"""Per-item processors built from a declarative playbook.

The workflow core does not decide which business action to take. The host
describes it as a list of steps, each naming a control to activate and an
expectation that proves the action took effect::

    {
      "steps": [
        {
          "name": "make_visible",
          "page": 3,
          "control": {"role": "visibility-toggle", "attrs": {"data-update": "{item_id}"}},
          "expect": {"role": "visible-marker", "attrs": {"data-update": "{item_id}"}},
          "confirmation": {
            "surface": {"role": "confirm-dialog"},
            "confirm": {"role": "confirm-continue"},
            "dismiss": {"role": "dialog-close"}
          }
        }
      ]
    }

Descriptor text and attribute values may reference ``{item_id}``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

from .error_codes import ErrorCode
from .logging_utils import _automation_event
from .navigation import NavigationStrategyEngine
from .ports import (
    DEFAULT_TECHNIQUES,
    Descriptor,
    DocumentPort,
    PortalSession,
    Technique,
    WorkItemResult,
)
from .verification import ActionVerificationLoop, ConfirmationSurface
from .workflow import ItemControls


@dataclass(frozen=True)
class ActionStep:
    name: str
    control: Descriptor
    expect: Descriptor
    # When False the step succeeds once ``expect`` is gone from the view.
    expect_present: bool = True
    confirmation: Optional[ConfirmationSurface] = None
    # Page of the item's own paginated table to reach before acting.
    page: Optional[int] = None

    def bind(self, item_id: str) -> "ActionStep":
        confirmation = None
        if self.confirmation is not None:
            confirmation = ConfirmationSurface(
                surface=self.confirmation.surface.format(item_id=item_id),
                confirm=self.confirmation.confirm.format(item_id=item_id),
                dismiss=(
                    self.confirmation.dismiss.format(item_id=item_id)
                    if self.confirmation.dismiss is not None
                    else None
                ),
            )
        return ActionStep(
            name=self.name,
            control=self.control.format(item_id=item_id),
            expect=self.expect.format(item_id=item_id),
            expect_present=self.expect_present,
            confirmation=confirmation,
            page=self.page,
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ActionStep":
        if "name" not in raw or "control" not in raw or "expect" not in raw:
            raise ValueError(f"Playbook step needs name, control and expect: {raw!r}")
        confirmation = None
        raw_confirmation = raw.get("confirmation")
        if raw_confirmation:
            confirmation = ConfirmationSurface(
                surface=Descriptor.from_dict(raw_confirmation["surface"]),
                confirm=Descriptor.from_dict(raw_confirmation["confirm"]),
                dismiss=(
                    Descriptor.from_dict(raw_confirmation["dismiss"])
                    if raw_confirmation.get("dismiss")
                    else None
                ),
            )
        page = raw.get("page")
        return cls(
            name=str(raw["name"]),
            control=Descriptor.from_dict(raw["control"]),
            expect=Descriptor.from_dict(raw["expect"]),
            expect_present=bool(raw.get("expect_present", True)),
            confirmation=confirmation,
            page=int(page) if page is not None else None,
        )


def load_steps(path: Path) -> List[ActionStep]:
    """Load playbook steps from a JSON file (a list or ``{"steps": [...]}``)."""

    with Path(path).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    raw_steps = payload.get("steps", []) if isinstance(payload, dict) else payload
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ValueError(f"Playbook {path} defines no steps")
    return [ActionStep.from_dict(raw) for raw in raw_steps]


def _expectation_holds(port: DocumentPort, descriptor: Descriptor, present: bool) -> bool:
    found = port.locate(descriptor) is not None
    return found if present else not found


class VerifiedStepsProcessor:
    """Run each playbook step through navigation and the verification loop."""

    def __init__(
        self,
        steps: Sequence[ActionStep],
        *,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        techniques: Sequence[Technique] = DEFAULT_TECHNIQUES,
        settle_timeout: Optional[float] = None,
        modal_timeout: Optional[float] = None,
        jump_threshold: Optional[int] = None,
    ) -> None:
        if not steps:
            raise ValueError("at least one step is required")
        self.steps = tuple(steps)
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._techniques = tuple(techniques)
        self._settle_timeout = settle_timeout
        self._modal_timeout = modal_timeout
        self._jump_threshold = jump_threshold

    def __call__(self, session: PortalSession, item_id: str, controls: ItemControls) -> WorkItemResult:
        port = session.port
        navigator = NavigationStrategyEngine(
            port,
            jump_threshold=self._jump_threshold,
            settle_timeout=self._settle_timeout,
            cancelled=controls.cancelled,
        )
        verifier = ActionVerificationLoop(
            port,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            techniques=self._techniques,
            settle_timeout=self._settle_timeout,
            modal_timeout=self._modal_timeout,
            wait=controls.wait,
        )

        attempts = 0
        confirmed: List[str] = []
        already: List[str] = []
        for template in self.steps:
            if controls.cancelled():
                return WorkItemResult(
                    item_id=item_id,
                    success=False,
                    detail=f"stopped before step {template.name}",
                    error_code=ErrorCode.CANCELLED,
                    attempts=attempts,
                )
            step = template.bind(item_id)

            if step.page is not None:
                reached = navigator.reach(step.page)
                if not reached:
                    return WorkItemResult(
                        item_id=item_id,
                        success=False,
                        detail=f"step {step.name}: page {step.page} not reached ({reached.reason})",
                        error_code=ErrorCode.NAVIGATION,
                        attempts=attempts,
                    )

            def _verify(step: ActionStep = step) -> bool:
                return _expectation_holds(port, step.expect, step.expect_present)

            if _verify():
                _automation_event("action", step="already_satisfied", item_id=item_id, name=step.name)
                already.append(step.name)
                continue

            if step.confirmation is not None:
                control = step.control

                def _activate(technique: Technique, control: Descriptor = control) -> bool:
                    ref = port.locate(control)
                    return ref is not None and bool(port.activate(ref, technique))

                outcome = verifier.perform_with_confirmation(
                    _activate, _verify, step.confirmation, label=step.name
                )
            else:
                outcome = verifier.activate_and_verify(step.control, _verify)

            attempts += outcome.attempts_used
            if not outcome.confirmed:
                return WorkItemResult(
                    item_id=item_id,
                    success=False,
                    detail=f"step {step.name} not confirmed after {outcome.attempts_used} attempt(s)",
                    error_code=ErrorCode.VERIFICATION,
                    attempts=attempts,
                )
            confirmed.append(step.name)

        return WorkItemResult(
            item_id=item_id,
            success=True,
            detail=f"{len(confirmed)} step(s) confirmed, {len(already)} already satisfied",
            attempts=attempts,
            extra={"steps_confirmed": ",".join(confirmed), "steps_already": ",".join(already)},
        )


__all__ = ["ActionStep", "VerifiedStepsProcessor", "load_steps"]
