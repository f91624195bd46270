"""``DocumentPort`` over a Playwright sync page.

Playwright sync objects are bound to the thread that created them; a port
must only be used from the workflow loop thread that opened its session.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence
from urllib.parse import parse_qs, urlsplit

from playwright.sync_api import Error as PWError
from playwright.sync_api import Locator, Page
from playwright.sync_api import TimeoutError as PWTimeout

from . import config
from .error_codes import SessionLostError
from .logging_utils import _automation_event
from .pager import parse_pager_html
from .ports import Descriptor, PageIdentity, Technique
from .selectors import PORTAL_SELECTORS, PortalSelectors
from .utils import log_line

_HIDE_OVERLAYS_JS = """
(selectors) => {
  let hidden = 0;
  for (const sel of selectors) {
    document.querySelectorAll(sel).forEach((el) => {
      el.style.display = 'none';
      el.style.pointerEvents = 'none';
      hidden += 1;
    });
  }
  return hidden;
}
"""


def _is_target_closed_error(exc: Exception) -> bool:
    """Return ``True`` if *exc* indicates the Playwright target is gone."""

    message = str(exc)
    return any(
        marker in message
        for marker in (
            "Target closed",
            "Target crashed",
            "has been closed",
            "Execution context was destroyed",
        )
    )


def is_portal_address(
    url: str,
    *,
    allowed: Iterable[str],
    login_markers: Iterable[str] = (),
) -> bool:
    """Return ``True`` when ``url`` is on an allowed host and not a login page."""

    parts = urlsplit(url or "")
    host = (parts.hostname or "").lower()
    if not host:
        return False
    on_domain = any(host == domain or host.endswith("." + domain) for domain in allowed)
    if not on_domain:
        return False
    path = (parts.path or "").lower()
    return not any(marker and marker in path for marker in login_markers)


def _safe_goto(page: Page, url: str, *, label: str, wait_until: str = "networkidle") -> bool:
    """Navigate to ``url`` with bounded timeouts and structured logging."""

    try:
        _automation_event("nav", step="goto", label=label, url=url)
        page.goto(url, wait_until=wait_until, timeout=config.NAV_TIMEOUT_SECONDS * 1000)
        return True
    except PWTimeout as exc:
        log_line(f"[PORTALFLOW][ERROR][NAV] goto({url!r}) timed out: {exc}")
        _automation_event("error", phase="nav", step="goto_timeout", label=label, url=url, error=str(exc))
        return False
    except PWError as exc:
        if _is_target_closed_error(exc):
            raise SessionLostError(f"Page closed while navigating to {label}") from exc
        log_line(f"[PORTALFLOW][ERROR][NAV] goto({url!r}) failed: {exc}")
        _automation_event("error", phase="nav", step="goto_error", label=label, url=url, error=str(exc))
        return False


class PlaywrightDocumentPort:
    def __init__(
        self,
        page: Page,
        *,
        selectors: PortalSelectors = PORTAL_SELECTORS,
        frame_name: Optional[str] = None,
        click_timeout_ms: Optional[int] = None,
        allowed_domains: Optional[Sequence[str]] = None,
        login_markers: Optional[Sequence[str]] = None,
        page_param: Optional[str] = None,
    ) -> None:
        self.page = page
        self.selectors = selectors
        self._frame_name = config.PORTAL_FRAME_NAME if frame_name is None else frame_name
        self._click_timeout_ms = click_timeout_ms or config.CLICK_TIMEOUT_MS
        self._allowed = tuple(allowed_domains) if allowed_domains is not None else config.allowed_domains()
        self._login_markers = (
            tuple(login_markers) if login_markers is not None else config.LOGIN_PATH_MARKERS
        )
        self._page_param = page_param or config.PAGE_QUERY_PARAM

    # Pages of the portal live inside a named iframe; fall back to the page.
    def _scope(self):
        if self._frame_name:
            frame = self.page.frame(name=self._frame_name)
            if frame is not None:
                return frame
        return self.page

    def _locator(self, descriptor: Descriptor) -> Locator:
        scope = self._scope()
        locator = scope.locator(self.selectors.css_for(descriptor.role))
        for name, value in descriptor.attrs:
            escaped = value.replace('"', '\\"')
            locator = locator.and_(scope.locator(f'[{name}="{escaped}"]'))
        if descriptor.text is not None:
            pattern = re.compile(rf"^\s*{re.escape(descriptor.text)}\s*$")
            locator = locator.filter(has_text=pattern)
        return locator

    def _raise_if_closed(self, exc: Exception, context: str) -> None:
        if _is_target_closed_error(exc):
            raise SessionLostError(f"Page closed during {context}") from exc

    def locate(self, descriptor: Descriptor) -> Optional[Locator]:
        try:
            locator = self._locator(descriptor)
            return locator.first if locator.count() else None
        except PWError as exc:
            self._raise_if_closed(exc, "locate")
            log_line(f"[PORTALFLOW][WARN] Locator error for {descriptor.role!r}: {exc}")
            return None

    def locate_all(self, descriptor: Descriptor) -> List[Locator]:
        try:
            locator = self._locator(descriptor)
            return [locator.nth(index) for index in range(locator.count())]
        except PWError as exc:
            self._raise_if_closed(exc, "locate_all")
            log_line(f"[PORTALFLOW][WARN] Locator error for {descriptor.role!r}: {exc}")
            return []

    def activate(self, ref: Locator, technique: Technique) -> bool:
        self.hide_overlays()
        try:
            if technique is Technique.PROGRAMMATIC:
                ref.evaluate("el => el.click()")
            elif technique is Technique.FORCED:
                ref.click(timeout=self._click_timeout_ms, force=True)
            else:
                ref.click(timeout=self._click_timeout_ms)
            return True
        except PWTimeout as exc:
            _automation_event("action", step="click_timeout", technique=technique.value, error=str(exc))
            return False
        except PWError as exc:
            self._raise_if_closed(exc, "activate")
            _automation_event("action", step="click_error", technique=technique.value, error=str(exc))
            return False

    def read_text(self, ref: Locator) -> str:
        try:
            return (ref.text_content(timeout=self._click_timeout_ms) or "").strip()
        except PWTimeout:
            return ""
        except PWError as exc:
            self._raise_if_closed(exc, "read_text")
            return ""

    def navigate(self, address: str) -> bool:
        return _safe_goto(self.page, address, label="navigate")

    def wait_settled(self, timeout: float) -> bool:
        timeout_ms = max(1, int(timeout * 1000))
        try:
            self.page.wait_for_load_state("networkidle", timeout=timeout_ms)
            self._scope().locator(self.selectors.busy_selector).first.wait_for(
                state="hidden", timeout=timeout_ms
            )
            return True
        except PWTimeout:
            _automation_event("nav", step="settle_timeout", timeout=timeout)
            return False
        except PWError as exc:
            self._raise_if_closed(exc, "wait_settled")
            return False

    def wait_for(self, descriptor: Descriptor, *, present: bool, timeout: float) -> bool:
        try:
            locator = self._locator(descriptor).first
            if timeout <= 0:
                # Playwright treats a zero timeout as "wait forever".
                return locator.is_visible() if present else not locator.is_visible()
            locator.wait_for(
                state="visible" if present else "hidden",
                timeout=max(1, int(timeout * 1000)),
            )
            return True
        except PWTimeout:
            return False
        except PWError as exc:
            self._raise_if_closed(exc, "wait_for")
            return False

    def current_identity(self) -> PageIdentity:
        try:
            if self.page.is_closed():
                return PageIdentity(domain_ok=False)
            top_url = self.page.url
            scope = self._scope()
            address = scope.url or top_url
            html = scope.content()
        except PWError as exc:
            if _is_target_closed_error(exc):
                return PageIdentity(domain_ok=False)
            log_line(f"[PORTALFLOW][WARN] Could not read page identity: {exc}")
            return PageIdentity(address=self.page.url, domain_ok=self._on_portal(self.page.url))

        info = parse_pager_html(html, row_selector=self.selectors.row_selector)
        query = parse_qs(urlsplit(address).query, keep_blank_values=True)
        return PageIdentity(
            address=address,
            addressable=self._page_param in query,
            page_number=info.current_page,
            total_pages=info.total_pages,
            item_count=info.item_count,
            total_items=info.total_items,
            page_size=info.page_size,
            domain_ok=self._on_portal(top_url),
        )

    def hide_overlays(self) -> int:
        """Hide floating widgets that swallow clicks; returns how many were hidden."""

        if not self.selectors.overlay_selectors:
            return 0
        try:
            hidden = self.page.evaluate(_HIDE_OVERLAYS_JS, list(self.selectors.overlay_selectors))
        except PWError as exc:
            self._raise_if_closed(exc, "hide_overlays")
            return 0
        return int(hidden or 0)

    def fill(self, descriptor: Descriptor, value: str) -> bool:
        ref = self.locate(descriptor)
        if ref is None:
            return False
        try:
            ref.fill(value, timeout=self._click_timeout_ms)
            return True
        except PWTimeout:
            return False
        except PWError as exc:
            self._raise_if_closed(exc, "fill")
            return False

    def _on_portal(self, url: str) -> bool:
        return is_portal_address(url, allowed=self._allowed, login_markers=self._login_markers)


__all__ = [
    "PlaywrightDocumentPort",
    "_is_target_closed_error",
    "_safe_goto",
    "is_portal_address",
]
