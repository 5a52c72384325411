"""Fire-and-forget auth event tracking: log line + Prometheus counter."""

import logging

from prometheus_client import Counter

logger = logging.getLogger(__name__)

AUTH_EVENTS = Counter(
    "campus_auth_events_total",
    "Authentication cookie lifecycle events",
    ["event"],
)

EVENT_LOGIN = "auth_login"
EVENT_REJECT = "auth_reject"
EVENT_ROTATE = "auth_rotate"
EVENT_LOGOUT = "auth_logout"


class EventTracker:
    def track(self, event: str, detail: str | int | None = None) -> None:
        """Record an event. Never raises: tracking must not break the auth flow."""
        try:
            AUTH_EVENTS.labels(event=event).inc()
            logger.debug("Auth event %s: %s", event, detail)
        except Exception as e:
            logger.warning("Event tracking failed for %s: %s", event, e)
