"""Live status of a recurring task against wall-clock time."""

import datetime
from dataclasses import dataclass

from django.utils import timezone

OVERDUE = "overdue"
PENDING_TODAY = "pending_today"
DUE_SOON = "due_soon"
SCHEDULED = "scheduled"

# Priority order: the first matching status wins.
STATUSES = (OVERDUE, PENDING_TODAY, DUE_SOON, SCHEDULED)

DOCUMENT_DUE_SOON_DAYS = 14
DUE_SOON_WINDOW = datetime.timedelta(hours=24)


@dataclass(frozen=True)
class NotStarted:
    due: datetime.datetime


@dataclass(frozen=True)
class AwaitingOccurrence:
    due: datetime.datetime
    last_completed_at: datetime.datetime


@dataclass(frozen=True)
class Satisfied:
    completed_at: datetime.datetime
    next_due: datetime.datetime


def schedule_state(last_completed_at, next_due_at):
    """Name the state encoded by a task's two schedule timestamps."""
    if last_completed_at is None:
        return NotStarted(due=next_due_at)
    if next_due_at is not None and last_completed_at < next_due_at:
        return AwaitingOccurrence(due=next_due_at, last_completed_at=last_completed_at)
    return Satisfied(completed_at=last_completed_at, next_due=next_due_at)


def _local(value):
    if value is not None and timezone.is_aware(value):
        return timezone.localtime(value)
    return value


def classify_status(next_due_at, now, last_completed_at=None, date_only=False,
                    completed_since=None):
    """Return one of ``STATUSES`` for a task.

    With ``date_only`` (document tasks) only calendar dates are compared and
    *completed_since(due_date)* decides whether the occurrence is already
    done; it defaults to checking ``last_completed_at``.  Otherwise the
    timestamps are compared directly.
    """
    if next_due_at is None:
        return SCHEDULED

    now = _local(now)
    due = _local(next_due_at)
    last = _local(last_completed_at)

    if date_only:
        return _classify_by_date(due.date(), now.date(), last, completed_since)

    if isinstance(schedule_state(last, due), Satisfied):
        return SCHEDULED

    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_tomorrow = start_of_today + datetime.timedelta(days=1)

    if due < start_of_today:
        return OVERDUE
    if due < start_of_tomorrow:
        return PENDING_TODAY
    if start_of_tomorrow <= due <= now + DUE_SOON_WINDOW:
        return DUE_SOON
    return SCHEDULED


def _classify_by_date(due_date, today, last, completed_since):
    if due_date > today + datetime.timedelta(days=DOCUMENT_DUE_SOON_DAYS):
        return SCHEDULED

    if completed_since is None:
        done = last is not None and last.date() >= due_date
    else:
        done = completed_since(due_date)
    if done:
        return SCHEDULED

    if due_date < today:
        return OVERDUE
    if due_date == today:
        return PENDING_TODAY
    return DUE_SOON
