"""Event tracking."""

from unittest.mock import patch

from campus_auth.services.monitoring import AUTH_EVENTS, EVENT_LOGIN, EventTracker


def test_track_increments_counter():
    before = AUTH_EVENTS.labels(event=EVENT_LOGIN)._value.get()
    EventTracker().track(EVENT_LOGIN, 1)
    assert AUTH_EVENTS.labels(event=EVENT_LOGIN)._value.get() == before + 1


def test_track_never_raises(caplog):
    with patch.object(AUTH_EVENTS, "labels", side_effect=RuntimeError("registry broken")):
        with caplog.at_level("WARNING"):
            EventTracker().track(EVENT_LOGIN, 1)
    assert "Event tracking failed" in caplog.text
