from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _automation_event
from .utils import log_line

Entrypoint = Literal["ui", "api", "cli", "tests"]


def _raise_config_error(
    message: str, *, entrypoint: Entrypoint, error: str, mode: str | None
) -> None:
    _automation_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
        mode=mode,
    )
    mode_fragment = f", mode={mode}" if mode else ""
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint}{mode_fragment})")
    raise ValueError(message)


def _clamp(field_name: str, value: object, adjusted: object, *, entrypoint: Entrypoint, mode: str | None) -> None:
    _automation_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field_name,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
        mode=mode,
    )
    log_line(f"[CONFIG] {field_name}={value!r} is out of range; clamping to {adjusted!r}.")
    setattr(config, field_name, adjusted)


def validate_runtime_config(entrypoint: Entrypoint, *, mode: str | None = None) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Non-fatal adjustments (e.g., clamping retry knobs) are logged but do not
    raise.
    """

    if mode is not None and config.parse_mode(mode) is None:
        _raise_config_error(
            f"Unknown workflow mode {mode!r}; expected one of {', '.join(config.ALL_MODES)}.",
            entrypoint=entrypoint,
            error="unknown_mode",
            mode=mode,
        )

    if not config.allowed_domains():
        _raise_config_error(
            "No allowed portal domains; set PORTALFLOW_ALLOWED_DOMAINS or PORTALFLOW_BASE_URL.",
            entrypoint=entrypoint,
            error="allowed_domains_empty",
            mode=mode,
        )

    if config.ACTION_MAX_ATTEMPTS < 1:
        _clamp("ACTION_MAX_ATTEMPTS", config.ACTION_MAX_ATTEMPTS, 1, entrypoint=entrypoint, mode=mode)

    if config.ACTION_BASE_DELAY_SECONDS < 0:
        _clamp(
            "ACTION_BASE_DELAY_SECONDS",
            config.ACTION_BASE_DELAY_SECONDS,
            0.0,
            entrypoint=entrypoint,
            mode=mode,
        )

    if config.NAV_JUMP_THRESHOLD < 1:
        _clamp("NAV_JUMP_THRESHOLD", config.NAV_JUMP_THRESHOLD, 1, entrypoint=entrypoint, mode=mode)

    if config.POLL_INTERVAL_SECONDS <= 0:
        _clamp("POLL_INTERVAL_SECONDS", config.POLL_INTERVAL_SECONDS, 0.25, entrypoint=entrypoint, mode=mode)

    if config.MAX_SURFACED_ERRORS < 1:
        _clamp("MAX_SURFACED_ERRORS", config.MAX_SURFACED_ERRORS, 1, entrypoint=entrypoint, mode=mode)

    if config.MIN_FREE_MB < 0:
        _raise_config_error(
            "MIN_FREE_MB must be non-negative.",
            entrypoint=entrypoint,
            error="min_free_mb_invalid",
            mode=mode,
        )

    timeout_fields = [
        ("NAV_TIMEOUT_SECONDS", config.NAV_TIMEOUT_SECONDS),
        ("SETTLE_TIMEOUT_SECONDS", config.SETTLE_TIMEOUT_SECONDS),
        ("MODAL_TIMEOUT_SECONDS", config.MODAL_TIMEOUT_SECONDS),
        ("IDEMPOTENCY_CHECK_TIMEOUT_SECONDS", config.IDEMPOTENCY_CHECK_TIMEOUT_SECONDS),
        ("CLICK_TIMEOUT_MS", config.CLICK_TIMEOUT_MS),
    ]

    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
                mode=mode,
            )


__all__ = ["validate_runtime_config", "Entrypoint"]
