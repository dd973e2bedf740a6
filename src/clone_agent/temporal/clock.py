"""
Clock and operating-hours policy.

All queue timestamps are aware UTC datetimes. Operating hours are evaluated
in the configured local timezone (pytz) and converted back to UTC.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from clone_agent.core.models import OperatingHours

class OperatingClock:
    """
    Source of "now" plus the daily operating window.

    Components take a clock instead of calling datetime.now() so tests can
    freeze or advance time.
    """

    def __init__(self, hours: Optional[OperatingHours] = None):
        self.hours = hours or OperatingHours()

    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        return datetime.now(timezone.utc)

    def to_local(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.hours.tz)

    def _local_at(self, day, at) -> datetime:
        naive = datetime.combine(day, at)
        return self.hours.tz.localize(naive).astimezone(timezone.utc)

    def window_for(self, moment: datetime) -> tuple[datetime, datetime]:
        """Operating window (UTC start, UTC end) on moment's local date."""
        local_day = self.to_local(moment).date()
        return (
            self._local_at(local_day, self.hours.start),
            self._local_at(local_day, self.hours.end),
        )

    def is_within_hours(self, moment: datetime) -> bool:
        """True if moment falls in [start, end) local time."""
        local = self.to_local(moment).time()
        return self.hours.start <= local < self.hours.end

    def next_window_start(self, moment: datetime) -> datetime:
        """
        Start of the next operating window at or after moment.

        Before today's start this is today's start; at or after today's end
        it is tomorrow's start. Inside the window it is moment itself.
        """
        local = self.to_local(moment)
        if local.time() < self.hours.start:
            return self._local_at(local.date(), self.hours.start)
        if local.time() >= self.hours.end:
            return self._local_at(local.date() + timedelta(days=1), self.hours.start)
        return moment
