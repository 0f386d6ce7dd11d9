"""Service helpers for the tasks app."""

import datetime
import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .exceptions import ScheduleExhausted
from .models import Task
from .recurrence import advance, apply_time_of_day, matches, select_anchor
from .status import STATUSES
from .store import TaskRecordStore

logger = logging.getLogger(__name__)


def _aware(day, time_of_day):
    return timezone.make_aware(datetime.datetime.combine(day, time_of_day))


class Reconciler:
    """Re-derives a task's schedule from its recorded completions.

    Rather than adding one period to the last due date, the reconciler walks
    forward occurrence by occurrence and stops at the first one nobody has
    recorded, so skipped or out-of-order completions leave visible gaps.
    """

    def __init__(self, store=None, cutoff_date=None, search_limit=None):
        self.store = store or TaskRecordStore()
        self.cutoff_date = cutoff_date or settings.SYNC_CUTOFF_DATE
        self.search_limit = search_limit or settings.SCHEDULE_SEARCH_LIMIT

    def reconcile(self, task):
        """Update *task* in place and in the store; return it.

        Completions on or before the cutoff date come from the legacy import
        and leave the task untouched.
        """
        latest = self.store.find_latest_completion(task.pk)
        if latest is None:
            return self._reset(task)

        record_date, record_time = latest
        if record_date <= self.cutoff_date:
            logger.info(
                "Task %s: latest completion %s is on or before cutoff %s; "
                "schedule left unchanged.",
                task.pk, record_date, self.cutoff_date,
            )
            return task

        completed_at = _aware(record_date, record_time or datetime.time.min)
        next_due_at = task.next_due_at
        if task.is_recurring:
            start = timezone.localtime(task.next_due_at)
            day = self.find_first_missing_occurrence(task, start.date(), record_date)
            next_due_at = apply_time_of_day(
                task.rule, _aware(day, start.time()), task.default_time,
            )

        self.store.update_task_schedule(
            task.pk, completed_at, next_due_at,
            expected_next_due_at=task.next_due_at,
        )
        logger.info(
            "Task %s advanced: last completed %s, next due %s.",
            task.pk, completed_at, next_due_at,
        )
        task.last_completed_at = completed_at
        task.next_due_at = next_due_at
        return task

    def _reset(self, task):
        current = timezone.localtime(task.next_due_at)
        next_due_at = apply_time_of_day(
            task.rule,
            _aware(timezone.localdate(), current.time()),
            task.default_time,
        )
        self.store.update_task_schedule(
            task.pk, None, next_due_at, expected_next_due_at=task.next_due_at,
        )
        logger.info("Task %s has no completions; reset to %s.", task.pk, next_due_at)
        task.last_completed_at = None
        task.next_due_at = next_due_at
        return task

    def find_first_missing_occurrence(self, task, start_day, last_completed_on=None):
        """Return the first occurrence on or after *start_day* with no completion."""
        rule = task.rule
        created_on = task.created_on
        day = start_day
        for _ in range(self.search_limit):
            if rule.steps_by_day:
                anchor = select_anchor(day, last_completed_on, created_on)
                is_occurrence = matches(rule, day, anchor)
                following = day + datetime.timedelta(days=1)
            else:
                is_occurrence = True
                following = advance(rule, day)
            if is_occurrence and not self.store.exists_completion(task.pk, day):
                return day
            day = following
        raise ScheduleExhausted(task.pk, start_day, self.search_limit)


def reconcile_task(task_id, reconciler=None):
    """Reconcile one task, holding its row for the duration.

    Call after any completion record for the task is created or deleted.
    """
    reconciler = reconciler or Reconciler()
    with transaction.atomic():
        task = Task.objects.select_for_update().get(pk=task_id)
        return reconciler.reconcile(task)


def tasks_by_status(subject_id=None, now=None):
    """Group tasks into status buckets, each ordered by due time."""
    now = now or timezone.now()
    tasks = Task.objects.order_by("next_due_at", "pk")
    if subject_id is not None:
        tasks = tasks.filter(subject_id=subject_id)

    buckets = {status: [] for status in STATUSES}
    for task in tasks:
        buckets[task.status(now)].append(task)
    return buckets
