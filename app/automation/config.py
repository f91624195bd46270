"""Configuration constants for the portal workflow automation."""
from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import urlparse

DATA_DIR: Path = Path(os.getenv("PORTALFLOW_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
RUNS_DIR: Path = DATA_DIR / "runs"
EXPORTS_DIR: Path = DATA_DIR / "exports"
DB_PATH: Path = DATA_DIR / "portalflow.db"
PLAYBOOK_FILE: Path = Path(
    os.getenv("PORTALFLOW_PLAYBOOK_FILE", str(DATA_DIR / "playbook.json"))
)

PORTAL_BASE_URL: str = os.getenv(
    "PORTALFLOW_BASE_URL", "https://app.recoverydatabase.net/"
)
LOGIN_URL: str = os.getenv("PORTALFLOW_LOGIN_URL", PORTAL_BASE_URL)
LISTING_URL: str = os.getenv(
    "PORTALFLOW_LISTING_URL",
    PORTAL_BASE_URL.rstrip("/") + "/v2/main/new_updates.php?case_worker=ALL&order=priority",
)
ITEM_URL_TEMPLATE: str = os.getenv(
    "PORTALFLOW_ITEM_URL_TEMPLATE",
    PORTAL_BASE_URL.rstrip("/") + "/alpha_rdn/module/default/case2/?case_id={item_id}",
)
# Most portal pages render inside a named iframe; an empty value targets the top page.
PORTAL_FRAME_NAME: str = os.getenv("PORTALFLOW_FRAME_NAME", "mainFrame")
PAGE_QUERY_PARAM: str = os.getenv("PORTALFLOW_PAGE_QUERY_PARAM", "page")
LOGIN_PATH_MARKERS: tuple[str, ...] = tuple(
    marker.strip().lower()
    for marker in os.getenv("PORTALFLOW_LOGIN_MARKERS", "login,signin,sign-in").split(",")
    if marker.strip()
)
HEADLESS: bool = os.getenv("PORTALFLOW_HEADLESS", "true").strip().lower() != "false"


def _parse_timeout_seconds(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Page loads and goto calls.
NAV_TIMEOUT_SECONDS: int = _parse_timeout_seconds("PORTALFLOW_NAV_TIMEOUT_SECONDS", 25)
# Network/DOM quiescence after a click or navigation.
SETTLE_TIMEOUT_SECONDS: int = _parse_timeout_seconds("PORTALFLOW_SETTLE_TIMEOUT_SECONDS", 20)
# Confirmation dialogs appearing and disappearing.
MODAL_TIMEOUT_SECONDS: int = _parse_timeout_seconds("PORTALFLOW_MODAL_TIMEOUT_SECONDS", 20)
IDEMPOTENCY_CHECK_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "PORTALFLOW_IDEMPOTENCY_TIMEOUT_SECONDS", 3
)
PORTAL_PROBE_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "PORTALFLOW_PORTAL_PROBE_TIMEOUT_SECONDS", 5
)
# Click-level timeout remains in milliseconds to match Playwright API expectations.
CLICK_TIMEOUT_MS: int = int(os.getenv("PORTALFLOW_CLICK_TIMEOUT_MS", "5000"))

# Retry and paging defaults. These were tuned empirically against one portal.
ACTION_MAX_ATTEMPTS: int = int(os.getenv("PORTALFLOW_ACTION_MAX_ATTEMPTS", "3"))
ACTION_BASE_DELAY_SECONDS: float = float(os.getenv("PORTALFLOW_ACTION_BASE_DELAY_SECONDS", "1.0"))
NAV_JUMP_THRESHOLD: int = int(os.getenv("PORTALFLOW_NAV_JUMP_THRESHOLD", "5"))

WORKFLOW_MODE_DEFAULT: str = (
    os.getenv("PORTALFLOW_MODE", "manual").strip().lower() or "manual"
)
CONTINUE_ON_ERROR: bool = os.getenv("PORTALFLOW_CONTINUE_ON_ERROR", "true").strip().lower() != "false"
INTER_ITEM_DELAY_SECONDS: float = float(os.getenv("PORTALFLOW_INTER_ITEM_DELAY_SECONDS", "2.0"))
RETURN_DELAY_SECONDS: float = float(os.getenv("PORTALFLOW_RETURN_DELAY_SECONDS", "1.0"))
POLL_INTERVAL_SECONDS: float = float(os.getenv("PORTALFLOW_POLL_INTERVAL_SECONDS", "0.25"))
MAX_SURFACED_ERRORS: int = int(os.getenv("PORTALFLOW_MAX_SURFACED_ERRORS", "50"))
# How long a new run waits for the previous loop to close its browser session.
RELEASE_GRACE_SECONDS: float = float(os.getenv("PORTALFLOW_RELEASE_GRACE_SECONDS", "0.5"))

MIN_FREE_MB: int = int(os.getenv("PORTALFLOW_MIN_FREE_MB", "100"))

MANUAL_MODE = "manual"
AUTOMATIC_MODE = "automatic"
ALL_MODES = (MANUAL_MODE, AUTOMATIC_MODE)

_MODE_ALIASES = {
    "manual": MANUAL_MODE,
    "step": MANUAL_MODE,
    "single": MANUAL_MODE,
    "automatic": AUTOMATIC_MODE,
    "auto": AUTOMATIC_MODE,
    "batch": AUTOMATIC_MODE,
}


def is_manual_mode(mode: str) -> bool:
    """Return ``True`` when ``mode`` requests one item per operator continuation."""

    return str(mode).strip().lower() == MANUAL_MODE


def parse_mode(raw: str | None) -> str | None:
    """Return the canonical mode for ``raw`` or ``None`` when unrecognised."""

    if raw is None:
        return None
    return _MODE_ALIASES.get(str(raw).strip().lower())


def allowed_domains() -> tuple[str, ...]:
    """Return hostnames considered part of an authenticated portal session."""

    raw = os.getenv("PORTALFLOW_ALLOWED_DOMAINS", "")
    domains = tuple(part.strip().lower() for part in raw.split(",") if part.strip())
    if domains:
        return domains
    host = (urlparse(PORTAL_BASE_URL).hostname or "").lower()
    return (host,) if host else ()
