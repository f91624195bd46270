"""CSS hints that resolve descriptor roles on the portal's pages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Tuple

_PAGER = ".dataTables_paginate .paginate_button"


def _default_roles() -> Dict[str, str]:
    return {
        "page-link": (
            f"{_PAGER}:not(.current):not(.previous):not(.next)"
            ":not(.first):not(.last):not(.disabled)"
        ),
        "next-page": f"{_PAGER}.next:not(.disabled)",
        "previous-page": f"{_PAGER}.previous:not(.disabled)",
        "last-page": f"{_PAGER}.last:not(.disabled)",
        "item-row": "#casestable tbody tr, table.js-datatable tbody tr",
        "item-id": "#casestable tbody tr td:first-child",
        "confirm-dialog": "#formModal",
        "confirm-continue": "#formModal button:has-text('Continue')",
        "dialog-close": "#formModal .close, #formModal [data-dismiss='modal']",
        "success-alert": ".alert-success, .success-message",
        "login-username": "input[name='username']",
        "login-password": "input[name='password']",
        "login-security-code": "input[name='code']",
        "login-submit": "button.btn.btn-success, button[type='submit']",
        "login-error": "div.error, .alert-danger",
    }


@dataclass(frozen=True)
class PortalSelectors:
    """Role-to-CSS mapping for ``PlaywrightDocumentPort``.

    Roles not listed fall back to ``[data-role="<role>"]`` so playbooks can
    target elements the portal marks up itself. Text hints are matched
    separately, never spliced into the CSS.
    """

    roles: Dict[str, str] = field(default_factory=_default_roles)
    # Elements that must be gone before the view counts as settled.
    busy_selector: str = "#loading:visible, #ContentLoader:visible"
    # Floating widgets known to intercept clicks on the pager.
    overlay_selectors: Tuple[str, ...] = (
        "#intercom-container",
        ".intercom-lightweight-app",
        "iframe[name='intercom-launcher-frame']",
    )
    # Listing markup handed to the pager parser.
    listing_container: str = "body"
    row_selector: str = "#casestable tbody tr"

    def css_for(self, role: str) -> str:
        return self.roles.get(role) or f'[data-role="{role}"]'

    def with_roles(self, overrides: Mapping[str, str]) -> "PortalSelectors":
        merged = dict(self.roles)
        merged.update({str(k): str(v) for k, v in overrides.items()})
        return replace(self, roles=merged)


PORTAL_SELECTORS = PortalSelectors()


def load_selector_overrides(path: Path) -> PortalSelectors:
    """Return the default selectors updated with a playbook's ``selectors`` map."""

    path = Path(path)
    if not path.exists():
        return PORTAL_SELECTORS
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    overrides = payload.get("selectors") if isinstance(payload, dict) else None
    if not overrides:
        return PORTAL_SELECTORS
    return PORTAL_SELECTORS.with_roles(overrides)


__all__ = [
    "PORTAL_SELECTORS",
    "PortalSelectors",
    "load_selector_overrides",
]
