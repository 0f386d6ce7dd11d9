"""Django ORM access used by the reconciler."""

import logging

from django.db import DatabaseError
from django.db.models import F
from django.utils import timezone

from .exceptions import StaleState, StoreError
from .models import CompletionRecord, Task

logger = logging.getLogger(__name__)


class TaskRecordStore:
    """Reads completion records and writes task schedule fields."""

    def find_latest_completion(self, task_id):
        """Return ``(record_date, record_time)`` of the newest completion, or None."""
        try:
            return (
                CompletionRecord.objects
                .filter(task_id=task_id)
                .order_by(
                    "-record_date",
                    F("record_time").desc(nulls_last=True),
                    "-pk",
                )
                .values_list("record_date", "record_time")
                .first()
            )
        except DatabaseError as exc:
            raise StoreError(f"Could not read completions for task {task_id}") from exc

    def exists_completion(self, task_id, day):
        try:
            return CompletionRecord.objects.filter(
                task_id=task_id, record_date=day,
            ).exists()
        except DatabaseError as exc:
            raise StoreError(
                f"Could not check completion for task {task_id} on {day}"
            ) from exc

    def update_task_schedule(self, task_id, last_completed_at, next_due_at,
                             expected_next_due_at=None):
        """Write both schedule fields.

        With *expected_next_due_at* the row is only updated if its
        ``next_due_at`` still holds that value; otherwise ``StaleState``.
        """
        rows = Task.objects.filter(pk=task_id)
        if expected_next_due_at is not None:
            rows = rows.filter(next_due_at=expected_next_due_at)
        try:
            updated = rows.update(
                last_completed_at=last_completed_at,
                next_due_at=next_due_at,
                updated_at=timezone.now(),
            )
        except DatabaseError as exc:
            raise StoreError(f"Could not update schedule of task {task_id}") from exc
        if not updated:
            raise StaleState(f"Task {task_id} schedule changed during reconciliation")
        logger.debug(
            "Task %s schedule: last_completed_at=%s next_due_at=%s",
            task_id, last_completed_at, next_due_at,
        )
