from __future__ import annotations

import pytest

from app.automation import navigation
from app.automation.error_codes import SessionLostError
from app.automation.navigation import (
    NavigationStrategyEngine,
    expected_item_count,
    rewrite_page_param,
)
from app.automation.ports import NavigationTarget
from tests.fake_portal import FakePortalPort


@pytest.fixture(autouse=True)
def _quiet_events(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(label: str = "", **fields: object) -> None:
        events.append((label, fields))

    monkeypatch.setattr(navigation, "_automation_event", _record)
    return events


def _engine(port: FakePortalPort, **kwargs) -> NavigationStrategyEngine:
    kwargs.setdefault("jump_threshold", 5)
    kwargs.setdefault("settle_timeout", 1.0)
    kwargs.setdefault("page_param", "page")
    return NavigationStrategyEngine(port, **kwargs)


def test_reach_current_page_is_a_no_op() -> None:
    port = FakePortalPort(current=7)
    engine = _engine(port)

    first = engine.reach(7)
    second = engine.reach(NavigationTarget(7))

    assert first.reached and second.reached
    assert first.strategy == navigation.ALREADY_THERE
    assert first.actions == 0 and second.actions == 0
    assert port.navigation_actions() == []


def test_visible_target_uses_direct_locate_only() -> None:
    port = FakePortalPort(current=3, window_radius=2)
    result = _engine(port).reach(5)

    assert result.reached is True
    assert result.strategy == navigation.DIRECT_LOCATE
    assert result.attempted == (navigation.DIRECT_LOCATE,)
    assert result.actions == 1
    assert port.current == 5


def test_short_distance_never_jumps_or_reverses() -> None:
    port = FakePortalPort(current=1, window_radius=0, total_pages=20)
    result = _engine(port).reach(4)

    assert result.reached is True
    assert result.strategy == navigation.INCREMENTAL_WALK
    assert navigation.JUMP_AND_WALK not in result.attempted
    assert navigation.REVERSE_FROM_END not in result.attempted
    assert navigation.JUMP_AND_WALK in result.skipped
    assert result.actions == 3
    assert [kind for kind, _ in port.navigation_actions()] == ["next-page"] * 3


def test_target_near_end_reverses_from_last_page() -> None:
    port = FakePortalPort(current=1, window_radius=0, total_pages=20)
    result = _engine(port).reach(18)

    assert result.reached is True
    assert result.strategy == navigation.REVERSE_FROM_END
    assert navigation.INCREMENTAL_WALK not in result.attempted
    # last-page control, then two steps back
    assert [kind for kind, _ in port.navigation_actions()] == [
        "last-page",
        "previous-page",
        "previous-page",
    ]
    assert result.actions == 3


def test_far_target_jumps_to_nearest_visible_page_then_walks() -> None:
    port = FakePortalPort(current=1, window_radius=10, total_pages=40)
    result = _engine(port).reach(12)

    assert result.reached is True
    assert result.strategy == navigation.JUMP_AND_WALK
    assert port.navigation_actions()[0] == ("page-link", navigation.Technique.NORMAL)
    assert result.actions == 2
    assert port.current == 12


def test_addressable_view_rewrites_page_parameter() -> None:
    port = FakePortalPort(current=1, window_radius=0, addressable=True, total_pages=30)
    result = _engine(port).reach(9)

    assert result.reached is True
    assert result.strategy == navigation.DIRECT_ADDRESS
    kind, address = port.navigation_actions()[0]
    assert kind == "navigate"
    assert "page=9" in str(address)
    assert "case_worker=ALL" in str(address)


def test_direct_address_skipped_when_view_is_not_addressable() -> None:
    port = FakePortalPort(current=1, window_radius=0, addressable=False)
    result = _engine(port).reach(3)

    assert navigation.DIRECT_ADDRESS in result.skipped
    assert not any(kind == "navigate" for kind, _ in port.navigation_actions())


def test_single_page_listing_cannot_reach_page_two() -> None:
    port = FakePortalPort(current=1, total_pages=1, has_pager=False)
    result = _engine(port).reach(2)

    assert result.reached is False
    assert result.reason == "all strategies failed"
    assert port.current == 1


def test_reachability_mismatch_is_final_for_the_call() -> None:
    port = FakePortalPort(current=3, window_radius=2, page_link_drift=1)
    result = _engine(port).reach(5)

    assert result.reached is False
    assert result.reason == "reachability_mismatch"
    assert result.observed_page == 6
    assert result.attempted == (navigation.DIRECT_LOCATE,)


def test_item_count_fingerprint_confirms_page_without_page_number() -> None:
    port = FakePortalPort(
        current=1,
        window_radius=3,
        total_pages=10,
        expose_page_number=False,
        total_items=95,
        page_size=10,
    )
    result = _engine(port).reach(10)

    assert result.reached is True
    assert result.verified is True


def test_unverifiable_view_is_accepted_but_flagged() -> None:
    port = FakePortalPort(current=1, window_radius=3, expose_page_number=False)
    result = _engine(port).reach(3)

    assert result.reached is True
    assert result.verified is False


def test_settle_failure_fails_the_strategy() -> None:
    port = FakePortalPort(current=1, window_radius=3, settle_ok=False)
    result = _engine(port).reach(2)

    assert result.reached is False
    assert navigation.DIRECT_LOCATE in result.attempted


def test_session_loss_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    port = FakePortalPort(current=1)
    port.domain_ok = False

    with pytest.raises(SessionLostError):
        _engine(port).reach(4)


def test_cancelled_engine_stops_before_next_strategy() -> None:
    port = FakePortalPort(current=1, window_radius=0)
    result = _engine(port, cancelled=lambda: True).reach(4)

    assert result.reached is False
    assert result.reason == "cancelled"
    assert port.navigation_actions() == []


def test_rewrite_page_param_requires_existing_parameter() -> None:
    assert rewrite_page_param("https://x.test/list?a=1&page=2", "page", 7) == "https://x.test/list?a=1&page=7"
    assert rewrite_page_param("https://x.test/list?a=1", "page", 7) is None


@pytest.mark.parametrize(
    "page, expected",
    [(1, 10), (9, 10), (10, 5), (11, 0)],
)
def test_expected_item_count(page: int, expected: int) -> None:
    assert expected_item_count(page, 95, 10) == expected
