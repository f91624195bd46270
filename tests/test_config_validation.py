from app.automation import config
from app.automation.config_validation import validate_runtime_config
import pytest


def test_unknown_mode_rejected() -> None:
    with pytest.raises(ValueError):
        validate_runtime_config("api", mode="turbo")


def test_mode_aliases_accepted() -> None:
    validate_runtime_config("cli", mode="auto")
    validate_runtime_config("cli", mode="Manual")


def test_min_free_mb_negative(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MIN_FREE_MB", -5)
    with pytest.raises(ValueError):
        validate_runtime_config("cli")


@pytest.mark.parametrize(
    "field_name",
    ["NAV_TIMEOUT_SECONDS", "SETTLE_TIMEOUT_SECONDS", "MODAL_TIMEOUT_SECONDS", "CLICK_TIMEOUT_MS"],
)
def test_invalid_timeout(monkeypatch: pytest.MonkeyPatch, field_name: str) -> None:
    monkeypatch.setattr(config, field_name, 0)
    with pytest.raises(ValueError):
        validate_runtime_config("cli")


def test_missing_allowed_domains(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "allowed_domains", lambda: ())
    with pytest.raises(ValueError):
        validate_runtime_config("ui")


def test_retry_knobs_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "ACTION_MAX_ATTEMPTS", 0)
    monkeypatch.setattr(config, "ACTION_BASE_DELAY_SECONDS", -2.0)
    monkeypatch.setattr(config, "NAV_JUMP_THRESHOLD", 0)
    monkeypatch.setattr(config, "POLL_INTERVAL_SECONDS", 0)
    monkeypatch.setattr(config, "MAX_SURFACED_ERRORS", 0)

    validate_runtime_config("tests")

    assert config.ACTION_MAX_ATTEMPTS == 1
    assert config.ACTION_BASE_DELAY_SECONDS == 0.0
    assert config.NAV_JUMP_THRESHOLD == 1
    assert config.POLL_INTERVAL_SECONDS == 0.25
    assert config.MAX_SURFACED_ERRORS == 1


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("manual", config.MANUAL_MODE),
        (" STEP ", config.MANUAL_MODE),
        ("auto", config.AUTOMATIC_MODE),
        ("batch", config.AUTOMATIC_MODE),
        ("turbo", None),
        (None, None),
    ],
)
def test_parse_mode(raw, expected) -> None:
    assert config.parse_mode(raw) == expected
