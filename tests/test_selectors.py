from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.automation.selectors import PORTAL_SELECTORS, load_selector_overrides
from app.automation.session import PortalCredentials


def test_unknown_role_falls_back_to_data_role() -> None:
    assert PORTAL_SELECTORS.css_for("visibility-toggle") == '[data-role="visibility-toggle"]'
    assert "paginate_button" in PORTAL_SELECTORS.css_for("next-page")


def test_playbook_selector_overrides(tmp_path: Path) -> None:
    path = tmp_path / "playbook.json"
    path.write_text(
        json.dumps({"steps": [], "selectors": {"visibility-toggle": ".js-visible-toggle"}}),
        encoding="utf-8",
    )

    selectors = load_selector_overrides(path)

    assert selectors.css_for("visibility-toggle") == ".js-visible-toggle"
    assert selectors.css_for("next-page") == PORTAL_SELECTORS.css_for("next-page")
    assert PORTAL_SELECTORS.css_for("visibility-toggle") == '[data-role="visibility-toggle"]'


def test_missing_playbook_keeps_defaults(tmp_path: Path) -> None:
    assert load_selector_overrides(tmp_path / "absent.json") is PORTAL_SELECTORS


def test_credentials_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RDN_USERNAME", " agent ")
    monkeypatch.setenv("RDN_PASSWORD", "secret")
    monkeypatch.setenv("RDN_SECURITY_CODE", "1234")

    credentials = PortalCredentials.from_env()

    assert credentials == PortalCredentials("agent", "secret", "1234")


def test_incomplete_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RDN_USERNAME", "agent")
    monkeypatch.delenv("RDN_PASSWORD", raising=False)

    assert PortalCredentials.from_env() is None
