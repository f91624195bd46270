"""Structured workflow events.

Every event is one line ``[PORTALFLOW][LABEL] key=value, ...`` with the keys
sorted, so a run log can be grepped by label:

``nav``
    navigation strategy attempts, skips and reachability checks
``action``
    verified actions: attempt number, technique, confirmation
``state``
    controller transitions, retry/continue decisions, config adjustments
``error``
    session loss and collaborator failures
``audit``
    audit store writes

Labels outside this set are still written, tagged ``label_unknown=True``.
"""

from __future__ import annotations

from typing import Any

from .utils import log_line

EVENT_LABELS = frozenset({"nav", "action", "state", "error", "audit"})
MAX_VALUE_CHARS = 300


def _render(value: Any) -> str:
    text = repr(value)
    if len(text) > MAX_VALUE_CHARS:
        return text[: MAX_VALUE_CHARS - 3] + "..."
    return text


def _automation_event(label: str = "", /, *, phase: str | None = None, **fields: Any) -> None:
    """Write one workflow event line; failures to log are dropped.

    Without a ``label`` the ``phase`` names the event. With both, the phase
    goes into the payload as ``phase=...``.
    """

    try:
        name = (label or phase or "").lower()
        if label and phase:
            fields.setdefault("phase", phase)
        if name not in EVENT_LABELS:
            fields["label_unknown"] = True
        payload = ", ".join(f"{key}={_render(value)}" for key, value in sorted(fields.items()))
        log_line(f"[PORTALFLOW][{name.upper()}] {payload}")
    except Exception:
        return


__all__ = ["EVENT_LABELS", "_automation_event"]
