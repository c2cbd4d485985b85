from dataclasses import dataclass
from datetime import datetime, time, timedelta

from .clock import LOCAL_TZ, as_aware_utc, to_local, to_utc_naive
from .config import settings

WINDOW_OPEN_OFFSET = timedelta(hours=int(settings.VISIT_WINDOW_OPEN_HOUR))
WINDOW_LENGTH = timedelta(hours=int(settings.VISIT_WINDOW_HOURS))


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        moment = as_aware_utc(instant)
        return self.start <= moment <= self.end

    @property
    def start_local(self) -> datetime:
        return to_local(self.start)

    @property
    def end_local(self) -> datetime:
        return to_local(self.end)

    def as_naive_utc(self) -> tuple[datetime, datetime]:
        return to_utc_naive(self.start), to_utc_naive(self.end)


def local_calendar_day(scheduled_date: datetime):
    return to_local(scheduled_date).date()


def compute_window(scheduled_date: datetime) -> Window:
    """Return the contribution window for the local calendar day of ``scheduled_date``.

    Only the year/month/day in the local timezone matters; the time of day on
    the input is discarded. The window opens at local noon and stays open for
    48 hours. Both bounds are timezone-aware UTC instants, and the same
    calendar day always produces the same pair.
    """
    day = local_calendar_day(scheduled_date)
    local_midnight = datetime.combine(day, time.min, tzinfo=LOCAL_TZ)
    start = as_aware_utc(local_midnight + WINDOW_OPEN_OFFSET)
    return Window(start=start, end=start + WINDOW_LENGTH)


def window_from_columns(start: datetime | None, end: datetime | None) -> Window | None:
    if start is None or end is None:
        return None
    return Window(start=as_aware_utc(start), end=as_aware_utc(end))
