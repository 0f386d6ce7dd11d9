"""Django ORM access used by the instance materializer."""

import logging
from dataclasses import dataclass

from django.db import DatabaseError, IntegrityError, transaction

from tasks.exceptions import StoreError

from .models import ScheduledInstance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstanceError:
    """A single instance that could not be generated."""

    prescription_id: int
    scheduled_date: object
    scheduled_time: object
    message: str

    def as_dict(self):
        return {
            "prescription_id": self.prescription_id,
            "scheduled_date": str(self.scheduled_date),
            "scheduled_time": str(self.scheduled_time),
            "message": self.message,
        }


def _key(instance):
    return (instance.prescription_id, instance.scheduled_date, instance.scheduled_time)


class InstanceRecordStore:
    """Writes and prunes scheduled dispensing instances."""

    def upsert_instances(self, instances):
        """Insert *instances*, skipping any whose identity key already exists.

        Returns ``(inserted_count, errors)``.  Existing rows are never
        modified, so re-running generation keeps in-progress workflow stages.
        """
        fresh = self._without_existing(instances)
        if not fresh:
            return 0, []
        try:
            with transaction.atomic():
                ScheduledInstance.objects.bulk_create(fresh, ignore_conflicts=True)
        except DatabaseError as exc:
            logger.warning(
                "Bulk insert of %d instance(s) failed (%s); inserting one at a time.",
                len(fresh), exc,
            )
            return self._insert_individually(fresh)
        return len(fresh), []

    def _without_existing(self, instances):
        if not instances:
            return []
        try:
            existing = set(
                ScheduledInstance.objects.filter(
                    prescription_id__in={i.prescription_id for i in instances},
                    scheduled_date__in={i.scheduled_date for i in instances},
                ).values_list("prescription_id", "scheduled_date", "scheduled_time")
            )
        except DatabaseError as exc:
            raise StoreError("Could not read existing scheduled instances") from exc

        fresh = []
        for instance in instances:
            key = _key(instance)
            if key not in existing:
                existing.add(key)
                fresh.append(instance)
        return fresh

    def _insert_individually(self, instances):
        inserted = 0
        errors = []
        for instance in instances:
            try:
                with transaction.atomic():
                    instance.save(force_insert=True)
            except IntegrityError as exc:
                instance.pk = None
                if self._exists(instance):
                    # Inserted concurrently; nothing to do.
                    continue
                errors.append(self._error(instance, exc))
            except DatabaseError as exc:
                instance.pk = None
                errors.append(self._error(instance, exc))
            else:
                inserted += 1
        return inserted, errors

    def _exists(self, instance):
        prescription_id, scheduled_date, scheduled_time = _key(instance)
        return ScheduledInstance.objects.filter(
            prescription_id=prescription_id,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
        ).exists()

    @staticmethod
    def _error(instance, exc):
        logger.warning(
            "Could not create instance %s %s for prescription %s: %s",
            instance.scheduled_date, instance.scheduled_time,
            instance.prescription_id, exc,
        )
        return InstanceError(
            prescription_id=instance.prescription_id,
            scheduled_date=instance.scheduled_date,
            scheduled_time=instance.scheduled_time,
            message=str(exc),
        )

    def delete_instances_after(self, prescription_id, end_date):
        """Delete instances dated strictly after *end_date*; return the count."""
        try:
            deleted, _ = ScheduledInstance.objects.filter(
                prescription_id=prescription_id,
                scheduled_date__gt=end_date,
            ).delete()
        except DatabaseError as exc:
            raise StoreError(
                f"Could not prune instances of prescription {prescription_id}"
            ) from exc
        return deleted

    def delete_instances_outside_window(self, prescription_id, window):
        """Delete instances outside *window* (a ``ValidityWindow``); return the count."""
        try:
            deleted, _ = ScheduledInstance.objects.filter(
                window.outside_q(), prescription_id=prescription_id,
            ).delete()
        except DatabaseError as exc:
            raise StoreError(
                f"Could not prune instances of prescription {prescription_id}"
            ) from exc
        return deleted
