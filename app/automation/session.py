"""Browser lifecycle and login for one portal session."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from playwright.sync_api import Error as PWError
from playwright.sync_api import TimeoutError as PWTimeout
from playwright.sync_api import sync_playwright

from . import config
from .error_codes import AuthenticationError
from .logging_utils import _automation_event
from .playwright_port import PlaywrightDocumentPort, _safe_goto
from .ports import Descriptor
from .selectors import PORTAL_SELECTORS, PortalSelectors
from .utils import log_line


@dataclass(frozen=True)
class PortalCredentials:
    username: str
    password: str
    security_code: str = ""

    @classmethod
    def from_env(cls) -> Optional["PortalCredentials"]:
        """Return credentials from ``RDN_*`` variables, or ``None`` if incomplete."""

        username = os.getenv("RDN_USERNAME", "").strip()
        password = os.getenv("RDN_PASSWORD", "")
        if not username or not password:
            return None
        return cls(
            username=username,
            password=password,
            security_code=os.getenv("RDN_SECURITY_CODE", "").strip(),
        )


class PlaywrightPortalSession:
    """One logged-in browser session; create and close it on the same thread."""

    def __init__(
        self,
        credentials: PortalCredentials,
        *,
        selectors: PortalSelectors = PORTAL_SELECTORS,
        headless: Optional[bool] = None,
    ) -> None:
        self._credentials = credentials
        self._selectors = selectors
        self._headless = config.HEADLESS if headless is None else headless
        self._playwright = None
        self._browser = None
        self._context = None
        self.port: Optional[PlaywrightDocumentPort] = None

    def start(self) -> "PlaywrightPortalSession":
        """Launch the browser and log in; raises :class:`AuthenticationError`."""

        self._playwright = sync_playwright().start()
        try:
            self._browser = self._playwright.chromium.launch(headless=self._headless)
            self._context = self._browser.new_context()
            page = self._context.new_page()
            page.set_default_timeout(config.NAV_TIMEOUT_SECONDS * 1000)
            self.port = PlaywrightDocumentPort(page, selectors=self._selectors)
            self._login()
        except Exception:
            self.close()
            raise
        return self

    def _login(self) -> None:
        assert self.port is not None
        page = self.port.page
        _automation_event("state", phase="login", username=self._credentials.username)
        if not _safe_goto(page, config.LOGIN_URL, label="login"):
            raise AuthenticationError("Could not reach the portal login page")

        # The login form is served on the top-level page, not in the content frame.
        login_port = PlaywrightDocumentPort(page, selectors=self._selectors, frame_name="")
        filled = login_port.fill(Descriptor("login-username"), self._credentials.username) and login_port.fill(
            Descriptor("login-password"), self._credentials.password
        )
        if filled and self._credentials.security_code:
            filled = login_port.fill(Descriptor("login-security-code"), self._credentials.security_code)
        if not filled:
            raise AuthenticationError("Login form not found")

        submit = login_port.locate(Descriptor("login-submit"))
        if submit is None:
            raise AuthenticationError("Login submit control not found")
        try:
            submit.click(timeout=config.CLICK_TIMEOUT_MS)
            page.wait_for_load_state("networkidle", timeout=config.NAV_TIMEOUT_SECONDS * 1000)
        except PWTimeout:
            log_line("[PORTALFLOW] networkidle timeout after login submit; checking identity anyway.")
        except PWError as exc:
            raise AuthenticationError(f"Login submit failed: {exc}") from exc

        error_ref = login_port.locate(Descriptor("login-error"))
        if error_ref is not None:
            message = login_port.read_text(error_ref) or "invalid credentials"
            raise AuthenticationError(f"Login failed: {message}")
        if not self.port.current_identity().domain_ok:
            raise AuthenticationError("Login failed - still on login page")
        _automation_event("state", phase="login_ok", url=page.url)

    def open_listing(self) -> bool:
        assert self.port is not None
        if not _safe_goto(self.port.page, config.LISTING_URL, label="listing"):
            return False
        return self.port.wait_settled(config.SETTLE_TIMEOUT_SECONDS)

    def open_item(self, item_id: str) -> bool:
        assert self.port is not None
        url = config.ITEM_URL_TEMPLATE.format(item_id=quote(str(item_id), safe=""))
        if not _safe_goto(self.port.page, url, label=f"item:{item_id}"):
            return False
        return self.port.wait_settled(config.SETTLE_TIMEOUT_SECONDS)

    def close(self) -> None:
        for name, closer in (
            ("context", self._context),
            ("browser", self._browser),
        ):
            if closer is None:
                continue
            try:
                closer.close()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[PORTALFLOW][WARN] Failed to close {name}: {exc}")
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as exc:  # noqa: BLE001
                log_line(f"[PORTALFLOW][WARN] Failed to stop Playwright: {exc}")
        self._context = self._browser = self._playwright = None
        _automation_event("state", phase="session_closed")


__all__ = ["PlaywrightPortalSession", "PortalCredentials"]
