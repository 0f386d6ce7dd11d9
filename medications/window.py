import datetime
from dataclasses import dataclass

from django.db.models import Q

DAY_START = datetime.time(0, 0)
DAY_END = datetime.time(23, 59)


@dataclass(frozen=True)
class ValidityWindow:
    """The span ``[start_date@start_time, end_date@end_time]`` of a prescription.

    A missing start time means the whole first day, a missing end time the
    whole last day, and a missing end date an open-ended prescription.
    """

    start_date: datetime.date
    start_time: datetime.time = None
    end_date: datetime.date = None
    end_time: datetime.time = None

    @property
    def effective_start_time(self):
        return self.start_time or DAY_START

    @property
    def effective_end_time(self):
        return self.end_time or DAY_END

    def contains(self, day, time_of_day):
        if day < self.start_date:
            return False
        if day == self.start_date and time_of_day < self.effective_start_time:
            return False
        if self.end_date is not None:
            if day > self.end_date:
                return False
            if day == self.end_date and time_of_day > self.effective_end_time:
                return False
        return True

    def outside_q(self):
        """Filter matching scheduled instances that fall outside the window."""
        outside = Q(scheduled_date__lt=self.start_date) | Q(
            scheduled_date=self.start_date,
            scheduled_time__lt=self.effective_start_time,
        )
        if self.end_date is not None:
            outside |= Q(scheduled_date__gt=self.end_date) | Q(
                scheduled_date=self.end_date,
                scheduled_time__gt=self.effective_end_time,
            )
        return outside
