"""Clock and id source consumed by the repositories."""

import uuid
from datetime import datetime
from zoneinfo import ZoneInfo

from django.conf import settings
from django.utils import timezone


def new_id() -> str:
    return str(uuid.uuid4())


class Clock:
    """Wall clock in epoch milliseconds plus the clinic-local calendar date."""

    def __init__(self, tz_name=None):
        self.tz = ZoneInfo(tz_name or getattr(settings, 'CLINIC_TIME_ZONE', 'Asia/Kolkata'))

    def now(self) -> datetime:
        return timezone.now()

    def now_ms(self) -> int:
        return int(self.now().timestamp() * 1000)

    def date_of(self, moment: datetime) -> str:
        return moment.astimezone(self.tz).date().isoformat()

    def today(self) -> str:
        return self.date_of(self.now())

    def year(self) -> int:
        return self.now().astimezone(self.tz).year
