from datetime import date, datetime
from zoneinfo import ZoneInfo

from .config import settings


class Clock:
    """Wall-clock source for the clinic.

    Returns naive datetimes in the clinic's local zone, which is how
    appointment and queue timestamps are stored.
    """

    def __init__(self, timezone: str = settings.TIMEZONE):
        self.zone = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.zone).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()

    def localize(self, value: datetime) -> datetime:
        """Convert an aware datetime to naive clinic-local time."""
        if value.tzinfo is None:
            return value
        return value.astimezone(self.zone).replace(tzinfo=None)
