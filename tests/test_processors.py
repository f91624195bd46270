from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.automation.error_codes import ErrorCode
from app.automation.ports import Descriptor, Technique
from app.automation.processors import ActionStep, VerifiedStepsProcessor, load_steps
from app.automation.workflow import ItemControls
from tests.fake_portal import FakePortalPort, FakeSession

PLAYBOOK = {
    "steps": [
        {
            "name": "make_visible",
            "control": {"role": "visibility-toggle", "attrs": {"data-update": "{item_id}"}},
            "expect": {"role": "visible-marker", "attrs": {"data-update": "{item_id}"}},
            "confirmation": {
                "surface": {"role": "confirm-dialog"},
                "confirm": {"role": "confirm-continue"},
                "dismiss": {"role": "dialog-close"},
            },
        }
    ]
}

CONTROLS = ItemControls(cancelled=lambda: False, wait=lambda seconds: True)


def _processor(steps, **kwargs) -> VerifiedStepsProcessor:
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("base_delay", 0)
    kwargs.setdefault("settle_timeout", 0.1)
    kwargs.setdefault("modal_timeout", 0.1)
    kwargs.setdefault("jump_threshold", 5)
    return VerifiedStepsProcessor(steps, **kwargs)


def _visibility_port() -> FakePortalPort:
    port = FakePortalPort()
    port.present.add("visibility-toggle")

    def _toggle(technique: Technique) -> bool:
        port.present.update({"confirm-dialog", "confirm-continue"})
        return True

    def _continue(technique: Technique) -> bool:
        port.present.difference_update({"confirm-dialog", "confirm-continue"})
        port.present.add("visible-marker")
        return True

    port.handlers["visibility-toggle"] = _toggle
    port.handlers["confirm-continue"] = _continue
    return port


def test_load_steps_accepts_mapping_and_list(tmp_path: Path) -> None:
    mapping_path = tmp_path / "playbook.json"
    mapping_path.write_text(json.dumps(PLAYBOOK), encoding="utf-8")
    list_path = tmp_path / "steps.json"
    list_path.write_text(json.dumps(PLAYBOOK["steps"]), encoding="utf-8")

    from_mapping = load_steps(mapping_path)
    from_list = load_steps(list_path)

    assert from_mapping == from_list
    step = from_mapping[0]
    assert step.name == "make_visible"
    assert step.control.attr("data-update") == "{item_id}"
    assert step.confirmation is not None
    assert step.confirmation.dismiss == Descriptor("dialog-close")


def test_load_steps_rejects_empty_playbook(tmp_path: Path) -> None:
    path = tmp_path / "empty.json"
    path.write_text(json.dumps({"steps": []}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_steps(path)


def test_step_requires_control_and_expectation() -> None:
    with pytest.raises(ValueError):
        ActionStep.from_dict({"name": "broken", "control": {"role": "x"}})


def test_bind_substitutes_item_id() -> None:
    step = ActionStep.from_dict(PLAYBOOK["steps"][0]).bind("4711")

    assert step.control.attr("data-update") == "4711"
    assert step.expect.attr("data-update") == "4711"


def test_confirmed_step_succeeds() -> None:
    port = _visibility_port()
    processor = _processor([ActionStep.from_dict(PLAYBOOK["steps"][0])])

    result = processor(FakeSession(port), "4711", CONTROLS)

    assert result.success is True
    assert result.attempts == 1
    assert result.extra["steps_confirmed"] == "make_visible"
    assert "visible-marker" in port.present


def test_step_already_satisfied_is_not_repeated() -> None:
    port = _visibility_port()
    port.present.add("visible-marker")
    processor = _processor([ActionStep.from_dict(PLAYBOOK["steps"][0])])

    result = processor(FakeSession(port), "4711", CONTROLS)

    assert result.success is True
    assert result.attempts == 0
    assert result.extra["steps_already"] == "make_visible"
    assert port.actions == []


def test_unconfirmed_step_is_a_verification_failure() -> None:
    port = FakePortalPort()
    port.present.add("save")
    step = ActionStep(name="save", control=Descriptor("save"), expect=Descriptor("saved-flag"))

    result = _processor([step])(FakeSession(port), "9", CONTROLS)

    assert result.success is False
    assert result.error_code == ErrorCode.VERIFICATION
    assert result.attempts == 3
    assert len([kind for kind, _ in port.actions if kind == "save"]) == 3


def test_absence_expectation_step() -> None:
    port = FakePortalPort()
    port.present.update({"remove", "pending-row"})
    port.handlers["remove"] = lambda technique: port.present.discard("pending-row") or True
    step = ActionStep(
        name="remove",
        control=Descriptor("remove"),
        expect=Descriptor("pending-row"),
        expect_present=False,
    )

    result = _processor([step])(FakeSession(port), "9", CONTROLS)

    assert result.success is True
    assert "pending-row" not in port.present


def test_unreachable_page_is_a_navigation_failure() -> None:
    port = FakePortalPort(total_pages=1, has_pager=False)
    port.present.add("save")
    step = ActionStep(name="save", control=Descriptor("save"), expect=Descriptor("saved"), page=3)

    result = _processor([step])(FakeSession(port), "9", CONTROLS)

    assert result.success is False
    assert result.error_code == ErrorCode.NAVIGATION
    assert port.actions == []


def test_step_runs_on_requested_page() -> None:
    port = FakePortalPort(total_pages=4, window_radius=3)
    port.present.add("save")
    port.handlers["save"] = lambda technique: port.present.add("saved") or True
    step = ActionStep(name="save", control=Descriptor("save"), expect=Descriptor("saved"), page=3)

    result = _processor([step])(FakeSession(port), "9", CONTROLS)

    assert result.success is True
    assert port.current == 3


def test_cancelled_run_stops_before_next_step() -> None:
    port = FakePortalPort()
    step = ActionStep(name="save", control=Descriptor("save"), expect=Descriptor("saved"))
    controls = ItemControls(cancelled=lambda: True, wait=lambda seconds: False)

    result = _processor([step])(FakeSession(port), "9", controls)

    assert result.success is False
    assert result.error_code == ErrorCode.CANCELLED
