"""Injectable wall clock.

Every booking-window computation asks the app clock for "now" instead of
calling ``datetime.utcnow()`` directly, so tests can move time forward
without sleeping. Times are naive UTC, like every timestamp we persist.
"""
from datetime import datetime, timedelta

from flask import current_app, has_app_context


class SystemClock:
    def now(self) -> datetime:
        return datetime.utcnow()


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime):
        self._now = value

    def advance(self, **kwargs):
        self._now = self._now + timedelta(**kwargs)
        return self._now


_default_clock = SystemClock()


def get_clock():
    if has_app_context():
        return current_app.extensions.get("clock", _default_clock)
    return _default_clock


def utcnow() -> datetime:
    return get_clock().now()
