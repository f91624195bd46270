from app.automation import logging_utils


def test_automation_event_label_and_phase(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._automation_event("nav", phase="reach", strategy="jump_and_walk")

    assert events
    line = events[-1]
    assert line.startswith("[PORTALFLOW][NAV]")
    assert "phase='reach'" in line
    assert "strategy='jump_and_walk'" in line


def test_automation_event_phase_only(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._automation_event(phase="state", status="paused")

    assert events[-1] == "[PORTALFLOW][STATE] status='paused'"


def test_automation_event_never_raises(monkeypatch):
    def _broken(msg):
        raise OSError("disk gone")

    monkeypatch.setattr(logging_utils, "log_line", _broken)

    logging_utils._automation_event("error", kind="whatever")


def test_unknown_label_is_tagged(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._automation_event("download", item="7")

    assert events[-1] == "[PORTALFLOW][DOWNLOAD] item='7', label_unknown=True"


def test_long_values_are_truncated(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._automation_event("error", detail="x" * 1000)

    rendered = events[-1].split("detail=", 1)[1]
    assert len(rendered) == logging_utils.MAX_VALUE_CHARS
    assert rendered.endswith("...")
