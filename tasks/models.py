import logging

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from . import recurrence
from .exceptions import InvalidRule
from .status import classify_status, schedule_state

logger = logging.getLogger(__name__)


class Task(models.Model):
    """A recurring care obligation for one resident."""

    class Kind(models.TextChoices):
        VITAL_SIGNS = "vital_signs", "Vital signs"
        BLOOD_GLUCOSE = "blood_glucose", "Blood glucose"
        BODY_WEIGHT = "body_weight", "Body weight"
        CATHETER_CHANGE = "catheter_change", "Urinary catheter change"
        FEEDING_TUBE_CHANGE = "feeding_tube_change", "Feeding tube change"
        WOUND_CARE = "wound_care", "Wound care"
        ANNUAL_CHECKUP = "annual_checkup", "Annual health checkup"
        MEDICATION_CONSENT = "medication_consent", "Medication self-keeping consent"

    class FrequencyUnit(models.TextChoices):
        HOURLY = "hourly", "Hourly"
        DAILY = "daily", "Daily"
        WEEKLY = "weekly", "Weekly"
        MONTHLY = "monthly", "Monthly"
        YEARLY = "yearly", "Yearly"

    MONITORING_KINDS = frozenset({"vital_signs", "blood_glucose", "body_weight"})
    NURSING_KINDS = frozenset({"catheter_change", "feeding_tube_change", "wound_care"})
    # Evaluated at date granularity.
    DOCUMENT_KINDS = frozenset({"annual_checkup", "medication_consent"})

    subject_id = models.PositiveIntegerField(help_text="Resident the task belongs to")
    kind = models.CharField(max_length=32, choices=Kind.choices)
    frequency_unit = models.CharField(
        max_length=16, choices=FrequencyUnit.choices, default=FrequencyUnit.DAILY
    )
    frequency_value = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    specific_times = models.JSONField(default=list, blank=True)
    specific_days_of_week = models.JSONField(default=list, blank=True)
    specific_days_of_month = models.JSONField(default=list, blank=True)
    last_completed_at = models.DateTimeField(null=True, blank=True)
    next_due_at = models.DateTimeField()
    is_recurring = models.BooleanField(default=True)
    end_date = models.DateField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["next_due_at"]
        indexes = [
            models.Index(fields=["subject_id", "kind"], name="task_subject_kind_idx"),
            models.Index(fields=["next_due_at"], name="task_next_due_idx"),
        ]

    def __str__(self):
        return f"{self.get_kind_display()} for resident {self.subject_id}"

    def _build_rule(self):
        return recurrence.RecurrenceRule.for_task(
            self.frequency_unit,
            self.frequency_value,
            times=self.specific_times,
            weekdays=self.specific_days_of_week,
            days_of_month=self.specific_days_of_month,
        )

    @property
    def rule(self):
        """The task's recurrence rule; an unknown unit falls back to daily."""
        try:
            return self._build_rule()
        except InvalidRule as exc:
            logger.warning("Task %s: %s; treating it as daily.", self.pk, exc)
            return recurrence.RecurrenceRule(recurrence.DAILY)

    @property
    def is_document_kind(self):
        return self.kind in self.DOCUMENT_KINDS

    @property
    def is_monitoring_kind(self):
        return self.kind in self.MONITORING_KINDS

    @property
    def default_time(self):
        """Time of day used when the rule configures none."""
        return recurrence.DEFAULT_TIME if self.is_monitoring_kind else None

    @property
    def created_on(self):
        if self.created_at is None:
            return timezone.localdate()
        return timezone.localdate(self.created_at)

    @property
    def state(self):
        return schedule_state(self.last_completed_at, self.next_due_at)

    def clean(self):
        errors = {}
        try:
            self._build_rule()
        except InvalidRule as exc:
            errors["frequency_unit"] = str(exc)
        for value in self.specific_times or ():
            try:
                recurrence.parse_time(value)
            except InvalidRule as exc:
                errors["specific_times"] = str(exc)
                break
        if not recurrence.valid_day_numbers(self.specific_days_of_week, 7):
            errors["specific_days_of_week"] = "Weekdays must be numbers 1-7."
        if not recurrence.valid_day_numbers(self.specific_days_of_month, 31):
            errors["specific_days_of_month"] = "Days of month must be numbers 1-31."
        if errors:
            raise ValidationError(errors)

    def project_next(self, from_dt=None):
        """Next due datetime after *from_dt* (default: now)."""
        if from_dt is None:
            from_dt = timezone.localtime()
        return recurrence.project_next(
            self.rule, from_dt, recurring=self.is_recurring,
            default_time=self.default_time,
        )

    def status(self, now=None, completed_since=None):
        return classify_status(
            self.next_due_at,
            now or timezone.now(),
            last_completed_at=self.last_completed_at,
            date_only=self.is_document_kind,
            completed_since=completed_since,
        )

    def describe_frequency(self):
        return recurrence.describe(self.rule)


class CompletionRecord(models.Model):
    """A task occurrence that was actually carried out and recorded."""

    task = models.ForeignKey(
        Task, on_delete=models.CASCADE, related_name="completions"
    )
    record_date = models.DateField()
    record_time = models.TimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    recorded_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["task", "record_date", "record_time"],
                name="completion_task_date_idx",
            ),
        ]

    def __str__(self):
        when = f"{self.record_date} {self.record_time:%H:%M}" if self.record_time \
            else f"{self.record_date}"
        return f"{self.task} @ {when}"
