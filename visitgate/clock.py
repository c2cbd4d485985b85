"""Wall-clock access and the fixed local timezone visits are scheduled in.

Callers receive a ``Clock`` instead of calling ``datetime.now`` directly so
window edges can be tested against a pinned instant.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol

from .config import settings

LOCAL_TZ = timezone(
    timedelta(minutes=int(settings.VISIT_TZ_OFFSET_MINUTES)),
    settings.VISIT_TZ_LABEL,
)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock pinned to one instant; ``advance`` moves it forward."""

    def __init__(self, instant: datetime):
        self._instant = as_aware_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = as_aware_utc(instant)

    def advance(self, delta: timedelta) -> None:
        self._instant = self._instant + delta


def as_aware_utc(value: datetime) -> datetime:
    # Naive values are stored UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime) -> datetime:
    return as_aware_utc(value).astimezone(LOCAL_TZ)


def format_local(value: datetime) -> str:
    local = to_local(value)
    hour = local.strftime("%I").lstrip("0") or "12"
    return f"{hour}:{local.strftime('%M %p')} {settings.VISIT_TZ_LABEL} on {local.strftime('%d %b %Y')}"
