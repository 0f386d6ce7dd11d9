"""Recurrence rules shared by care tasks and medication prescriptions.

Tasks and prescriptions describe "how often" with two different
vocabularies.  Both are translated into a single ``RecurrenceRule`` by the
``for_task`` / ``for_prescription`` adapters, and every evaluation below
works on that one type.

Functions here are pure: they take dates and datetimes and never touch the
database.
"""

import calendar
import datetime
import logging
import re
from dataclasses import dataclass

from dateutil.relativedelta import relativedelta

from .exceptions import InvalidRule

logger = logging.getLogger(__name__)

HOURLY = "hourly"
DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
YEARLY = "yearly"
ODD_EVEN = "odd_even"
MONTH_INTERVAL = "month_interval"

FREQUENCIES = (HOURLY, DAILY, WEEKLY, MONTHLY, YEARLY, ODD_EVEN, MONTH_INTERVAL)

ODD = "odd"
EVEN = "even"
NO_PARITY = "none"

# External vocabularies -> internal frequency.
TASK_UNITS = {
    "hourly": HOURLY,
    "daily": DAILY,
    "weekly": WEEKLY,
    "monthly": MONTHLY,
    "yearly": YEARLY,
}
PRESCRIPTION_FREQUENCIES = {
    "daily": DAILY,
    "every_x_days": DAILY,
    "weekly_days": WEEKLY,
    "odd_even_days": ODD_EVEN,
    "every_x_months": MONTH_INTERVAL,
}

DEFAULT_TIME = datetime.time(8, 0)

# Upper bound on month hops when looking for a configured day that exists.
_MAX_MONTH_HOPS = 120

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_SHORTHAND_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?([APN])$")

_WEEKDAY_NAMES = {1: "Mon", 2: "Tue", 3: "Wed", 4: "Thu", 5: "Fri", 6: "Sat", 7: "Sun"}


def parse_time(value):
    """Return a ``datetime.time`` (minute precision) for *value*.

    Accepts ``time`` objects, ``HH:MM``, ``HH:MM:SS`` and the dispensing
    shorthand used on medication charts: ``7A``, ``7:30A``, ``12N``, ``6P``.
    """
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0)

    text = str(value).strip().upper()
    match = _CLOCK_RE.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
    else:
        match = _SHORTHAND_RE.match(text)
        if not match:
            raise InvalidRule(f"Unrecognised time of day: {value!r}")
        hours = int(match.group(1))
        minutes = int(match.group(2) or 0)
        period = match.group(3)
        if period == "A" and hours == 12:
            hours = 0
        elif period == "P" and hours != 12:
            hours += 12
        elif period == "N":
            hours = 12

    try:
        return datetime.time(hours, minutes)
    except ValueError as exc:
        raise InvalidRule(f"Unrecognised time of day: {value!r}") from exc


def format_time(value):
    """Render a time slot as ``HH:MM``."""
    return parse_time(value).strftime("%H:%M")


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: str
    interval: int = 1
    times: tuple = ()
    weekdays: frozenset = frozenset()
    days_of_month: frozenset = frozenset()
    parity: str = NO_PARITY

    def __post_init__(self):
        if self.frequency not in FREQUENCIES:
            raise InvalidRule(f"Unknown frequency: {self.frequency!r}")
        if isinstance(self.interval, bool) or not isinstance(self.interval, int) \
                or self.interval < 1:
            raise InvalidRule(f"Interval must be a positive integer, got {self.interval!r}")
        if any(not 1 <= day <= 7 for day in self.weekdays):
            raise InvalidRule(f"Weekdays must be 1-7, got {sorted(self.weekdays)}")
        if any(not 1 <= day <= 31 for day in self.days_of_month):
            raise InvalidRule(
                f"Days of month must be 1-31, got {sorted(self.days_of_month)}"
            )
        if self.parity not in (ODD, EVEN, NO_PARITY):
            raise InvalidRule(f"Unknown odd/even flag: {self.parity!r}")

    @classmethod
    def for_task(cls, unit, value=1, times=(), weekdays=(), days_of_month=()):
        """Build a rule from the care-task vocabulary.

        Stored values are taken leniently: an unusable interval becomes 1 and
        unparseable times or out-of-range day numbers are dropped with a
        warning.
        """
        try:
            frequency = TASK_UNITS[unit]
        except KeyError:
            raise InvalidRule(f"Unknown task frequency unit: {unit!r}") from None
        return cls(
            frequency=frequency,
            interval=_interval(value),
            times=_times(times),
            weekdays=_day_set(weekdays, 7),
            days_of_month=_day_set(days_of_month, 31),
        )

    @classmethod
    def for_prescription(cls, frequency_type, value=1, weekdays=(), odd_even=NO_PARITY):
        """Build a rule from the prescription vocabulary.

        ``every_x_days`` and ``every_x_months`` are anchored on the
        prescription start date by the caller.
        """
        try:
            frequency = PRESCRIPTION_FREQUENCIES[frequency_type]
        except KeyError:
            raise InvalidRule(
                f"Unknown prescription frequency: {frequency_type!r}"
            ) from None
        interval = 1 if frequency_type in ("daily", "weekly_days", "odd_even_days") \
            else _interval(value)
        return cls(
            frequency=frequency,
            interval=interval,
            weekdays=_day_set(weekdays, 7),
            parity=odd_even or NO_PARITY,
        )

    @property
    def steps_by_day(self):
        """True when occurrences are found by testing each calendar day.

        Rules without a day-level pattern (weekly or monthly with no set,
        yearly) are walked by their native step instead.
        """
        if self.frequency == WEEKLY:
            return bool(self.weekdays)
        if self.frequency == MONTHLY:
            return bool(self.days_of_month)
        return self.frequency != YEARLY


def _interval(value):
    """Positive interval from *value*; missing or unusable values mean 1."""
    if value in (None, ""):
        return 1
    try:
        interval = int(value)
    except (TypeError, ValueError):
        interval = 0
    if interval < 1:
        logger.warning("Interval %r is not a positive integer; using 1.", value)
        return 1
    return interval


def _times(values):
    parsed = []
    for value in values or ():
        try:
            parsed.append(parse_time(value))
        except InvalidRule:
            logger.warning("Ignoring unrecognised time of day %r.", value)
    return tuple(parsed)


def _day_number(value, highest):
    try:
        day = int(value)
    except (TypeError, ValueError):
        return None
    return day if 1 <= day <= highest else None


def valid_day_numbers(values, highest):
    """True if every entry of *values* is a day number in ``1..highest``."""
    return all(_day_number(value, highest) is not None for value in values or ())


def _day_set(values, highest):
    days = set()
    for value in values or ():
        day = _day_number(value, highest)
        if day is None:
            logger.warning("Ignoring day number %r outside 1-%d.", value, highest)
            continue
        days.add(day)
    return frozenset(days)


def select_anchor(day, last_completed_on, created_on):
    """Pick the cycle origin for interval rules evaluated on *day*.

    The latest completion wins when it falls before *day*, so a late or
    early completion resets the cadence; otherwise the creation date is used.
    """
    if last_completed_on is not None and last_completed_on < day:
        return last_completed_on
    return created_on


def matches(rule, day, anchor=None):
    """Return True if *day* is an occurrence of *rule*.

    *anchor* is the cycle origin for ``daily`` rules with an interval above
    one, ``month_interval`` and ``yearly`` rules; those never match without
    one.
    """
    frequency = rule.frequency
    if frequency == HOURLY:
        return True
    if frequency == DAILY:
        if rule.interval == 1:
            return True
        if anchor is None:
            return False
        elapsed = (day - anchor).days
        return elapsed >= 0 and elapsed % rule.interval == 0
    if frequency == WEEKLY:
        return day.isoweekday() in rule.weekdays
    if frequency == MONTHLY:
        return day.day in rule.days_of_month
    if frequency == ODD_EVEN:
        if rule.parity == ODD:
            return day.day % 2 == 1
        if rule.parity == EVEN:
            return day.day % 2 == 0
        return False
    if anchor is None:
        return False
    if frequency == MONTH_INTERVAL:
        # A start on the 31st never fires in shorter months.
        months = (day.year - anchor.year) * 12 + (day.month - anchor.month)
        return months >= 0 and months % rule.interval == 0 and day.day == anchor.day
    if frequency == YEARLY:
        years = day.year - anchor.year
        return (
            years >= 0
            and years % rule.interval == 0
            and (day.month, day.day) == (anchor.month, anchor.day)
        )
    return False


def advance(rule, value):
    """Apply one step of *rule* to a date or datetime, ignoring time of day."""
    frequency = rule.frequency
    if frequency == HOURLY:
        # Hourly tasks come due once a day; the time of day sets the slot.
        return value + datetime.timedelta(days=1)
    if frequency == DAILY:
        return value + datetime.timedelta(days=rule.interval)
    if frequency == WEEKLY:
        if not rule.weekdays:
            return value + datetime.timedelta(weeks=rule.interval)
        for offset in range(1, 8):
            candidate = value + datetime.timedelta(days=offset)
            if candidate.isoweekday() in rule.weekdays:
                return candidate
    if frequency == MONTHLY:
        if rule.days_of_month:
            return _next_day_of_month(rule, value)
        return value + relativedelta(months=rule.interval)
    if frequency == YEARLY:
        return value + relativedelta(years=rule.interval)
    if frequency == ODD_EVEN and rule.parity != NO_PARITY:
        for offset in range(1, 3):
            candidate = value + datetime.timedelta(days=offset)
            if matches(rule, candidate):
                return candidate
    if frequency == MONTH_INTERVAL:
        return value + relativedelta(months=rule.interval)
    return value + datetime.timedelta(days=1)


def _next_day_of_month(rule, value):
    days = sorted(rule.days_of_month)
    month_length = calendar.monthrange(value.year, value.month)[1]
    later = [d for d in days if value.day < d <= month_length]
    if later:
        return value.replace(day=later[0])

    month_start = value.replace(day=1)
    for _ in range(_MAX_MONTH_HOPS):
        month_start += relativedelta(months=rule.interval)
        month_length = calendar.monthrange(month_start.year, month_start.month)[1]
        fitting = [d for d in days if d <= month_length]
        if fitting:
            return month_start.replace(day=fitting[0])
    return month_start.replace(day=month_length)


def apply_time_of_day(rule, value, default_time=None):
    """Set the time of *value* from the rule's first time, else *default_time*."""
    if rule.times:
        chosen = rule.times[0]
    elif default_time is not None:
        chosen = default_time
    else:
        return value
    return value.replace(hour=chosen.hour, minute=chosen.minute, second=0, microsecond=0)


def project_next(rule, from_dt, recurring=True, default_time=None):
    """Return the next due datetime after *from_dt*.

    Non-recurring tasks keep *from_dt*.  Every recurring result gets the
    time-of-day policy applied.
    """
    if not recurring:
        return from_dt
    return apply_time_of_day(rule, advance(rule, from_dt), default_time)


def describe(rule):
    """Short English description of how often *rule* fires."""
    n = rule.interval
    frequency = rule.frequency
    if frequency == HOURLY:
        return "Hourly" if n == 1 else f"Every {n} hours"
    if frequency == DAILY:
        return "Daily" if n == 1 else f"Every {n} days"
    if frequency == WEEKLY:
        base = "Weekly" if n == 1 else f"Every {n} weeks"
        if rule.weekdays:
            names = ", ".join(_WEEKDAY_NAMES[d] for d in sorted(rule.weekdays))
            return f"{base} on {names}"
        return base
    if frequency == MONTHLY:
        base = "Monthly" if n == 1 else f"Every {n} months"
        if rule.days_of_month:
            days = ", ".join(str(d) for d in sorted(rule.days_of_month))
            return f"{base} on day {days}"
        return base
    if frequency == YEARLY:
        return "Yearly" if n == 1 else f"Every {n} years"
    if frequency == ODD_EVEN:
        return {ODD: "Odd days", EVEN: "Even days"}.get(rule.parity, "Never")
    return "Monthly" if n == 1 else f"Every {n} months"
