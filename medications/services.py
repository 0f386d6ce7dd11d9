"""Service helpers for the medications app."""

import logging
from collections import Counter
from dataclasses import dataclass, field

from dateutil.rrule import DAILY, rrule
from django.utils import timezone

from tasks.exceptions import InvalidRule
from tasks.recurrence import parse_time

from .models import Prescription, ScheduledInstance
from .store import InstanceError, InstanceRecordStore

logger = logging.getLogger(__name__)

# Statuses whose prescriptions are expanded; inactive ones keep their
# history consistent with later edits.
GENERATED_STATUSES = (Prescription.Status.ACTIVE, Prescription.Status.INACTIVE)


@dataclass
class GenerationResult:
    created: int = 0
    pruned: int = 0
    errors: list = field(default_factory=list)
    prescriptions_processed: int = 0

    def merge(self, other):
        self.created += other.created
        self.pruned += other.pruned
        self.errors.extend(other.errors)
        self.prescriptions_processed += other.prescriptions_processed
        return self

    @property
    def success(self):
        return not self.errors


class InstanceMaterializer:
    """Expands prescriptions into dispensing instances for one date."""

    def __init__(self, store=None):
        self.store = store or InstanceRecordStore()

    def generate(self, target_date, prescriptions):
        result = GenerationResult()
        for prescription in prescriptions:
            result.merge(self.generate_for_prescription(prescription, target_date))
        logger.info(
            "Generated %d instance(s) for %s across %d prescription(s); pruned %d.",
            result.created, target_date, result.prescriptions_processed, result.pruned,
        )
        return result

    def generate_for_prescription(self, prescription, target_date):
        result = GenerationResult(prescriptions_processed=1)

        if prescription.end_date and target_date > prescription.end_date:
            result.pruned += self.store.delete_instances_after(
                prescription.pk, prescription.end_date,
            )
        elif target_date >= prescription.start_date:
            staged, errors = self._stage(prescription, target_date)
            result.errors.extend(errors)
            if staged:
                created, errors = self.store.upsert_instances(staged)
                result.created += created
                result.errors.extend(errors)

        # Edits to the window apply to instances already generated.
        result.pruned += self.store.delete_instances_outside_window(
            prescription.pk, prescription.window,
        )
        return result

    def _stage(self, prescription, target_date):
        try:
            due = prescription.is_due_on(target_date)
        except InvalidRule as exc:
            logger.warning("Prescription %s has an invalid rule: %s", prescription.pk, exc)
            return [], [InstanceError(prescription.pk, target_date, None, str(exc))]
        if not due:
            return [], []

        window = prescription.window
        staged = []
        errors = []
        for slot in prescription.time_slots or ():
            try:
                slot_time = parse_time(slot)
            except InvalidRule as exc:
                logger.warning(
                    "Prescription %s: skipping time slot %r (%s)", prescription.pk, slot, exc,
                )
                errors.append(InstanceError(prescription.pk, target_date, slot, str(exc)))
                continue
            if not window.contains(target_date, slot_time):
                continue
            staged.append(ScheduledInstance(
                prescription=prescription,
                subject_id=prescription.subject_id,
                scheduled_date=target_date,
                scheduled_time=slot_time,
            ))
        return staged, errors


def _prescriptions_for(subject_id=None):
    qs = Prescription.objects.filter(status__in=GENERATED_STATUSES).order_by("pk")
    if subject_id is not None:
        qs = qs.filter(subject_id=subject_id)
    return qs


def generate_instances_for_date(target_date, subject_id=None, materializer=None):
    """Create dispensing instances for *target_date* and prune stale ones.

    Idempotent: instances that already exist are left as they are.
    Returns a ``GenerationResult``.
    """
    materializer = materializer or InstanceMaterializer()
    return materializer.generate(target_date, _prescriptions_for(subject_id))


def generate_instances_for_range(start_date, end_date, subject_id=None, materializer=None):
    """Run ``generate_instances_for_date`` for every day from *start_date* to *end_date*."""
    materializer = materializer or InstanceMaterializer()
    total = GenerationResult()
    for day in rrule(DAILY, dtstart=start_date, until=end_date):
        total.merge(generate_instances_for_date(
            day.date(), subject_id=subject_id, materializer=materializer,
        ))
    return total


def _local_naive(now):
    now = now or timezone.now()
    if timezone.is_aware(now):
        now = timezone.localtime(now)
    return now.replace(tzinfo=None)


def overdue_instances(now=None, subject_id=None):
    """Instances whose dose time has passed with dispensing still pending."""
    now = _local_naive(now)
    candidates = ScheduledInstance.objects.filter(
        dispensing_status=ScheduledInstance.StageStatus.PENDING,
        scheduled_date__lte=now.date(),
    ).select_related("prescription")
    if subject_id is not None:
        candidates = candidates.filter(subject_id=subject_id)
    return [instance for instance in candidates if instance.is_overdue(now)]


def overdue_counts_by_date(dates, now=None, subject_id=None):
    """Map each of *dates* to its number of overdue instances."""
    counts = Counter(
        instance.scheduled_date for instance in overdue_instances(now, subject_id)
    )
    return {day: counts.get(day, 0) for day in dates}
