import datetime

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q

from tasks.exceptions import InvalidRule
from tasks.recurrence import RecurrenceRule, matches, parse_time, valid_day_numbers

from .window import ValidityWindow


class Prescription(models.Model):
    class FrequencyType(models.TextChoices):
        DAILY = "daily", "Daily"
        EVERY_X_DAYS = "every_x_days", "Every X days"
        WEEKLY_DAYS = "weekly_days", "On weekdays"
        ODD_EVEN_DAYS = "odd_even_days", "Odd or even days"
        EVERY_X_MONTHS = "every_x_months", "Every X months"

    class OddEven(models.TextChoices):
        ODD = "odd", "Odd days"
        EVEN = "even", "Even days"
        NONE = "none", "Not applicable"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"
        PENDING_CHANGE = "pending_change", "Pending change"

    subject_id = models.PositiveIntegerField(help_text="Resident the prescription is for")
    medication_name = models.CharField(max_length=255)
    frequency_type = models.CharField(
        max_length=20, choices=FrequencyType.choices, default=FrequencyType.DAILY
    )
    frequency_value = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    specific_weekdays = models.JSONField(default=list, blank=True)
    odd_even = models.CharField(
        max_length=4, choices=OddEven.choices, default=OddEven.NONE
    )
    time_slots = models.JSONField(default=list, blank=True)
    start_date = models.DateField()
    start_time = models.TimeField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    end_time = models.TimeField(null=True, blank=True)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.ACTIVE
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["subject_id", "medication_name"]
        indexes = [
            models.Index(fields=["status", "start_date"], name="prescription_status_start_idx"),
            models.Index(fields=["subject_id", "status"], name="prescription_subject_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_date__isnull=True) | Q(end_date__gte=F("start_date")),
                name="prescription_start_before_end",
            ),
        ]

    def __str__(self):
        return f"{self.medication_name} for resident {self.subject_id}"

    @property
    def rule(self):
        return RecurrenceRule.for_prescription(
            self.frequency_type,
            self.frequency_value,
            weekdays=self.specific_weekdays,
            odd_even=self.odd_even,
        )

    @property
    def window(self):
        return ValidityWindow(
            start_date=self.start_date,
            start_time=self.start_time,
            end_date=self.end_date,
            end_time=self.end_time,
        )

    def is_due_on(self, target_date):
        """True if the frequency calls for a dose on *target_date*."""
        return matches(self.rule, target_date, anchor=self.start_date)

    def clean(self):
        errors = {}
        try:
            self.rule
        except InvalidRule as exc:
            errors["frequency_type"] = str(exc)
        for slot in self.time_slots or ():
            try:
                parse_time(slot)
            except InvalidRule as exc:
                errors["time_slots"] = str(exc)
                break
        if not valid_day_numbers(self.specific_weekdays, 7):
            errors["specific_weekdays"] = "Weekdays must be numbers 1-7."
        if self.end_date and self.start_date and self.end_date < self.start_date:
            errors["end_date"] = "End date cannot be before the start date."
        if errors:
            raise ValidationError(errors)


class ScheduledInstance(models.Model):
    """One dose slot of a prescription, tracked through the dispensing workflow."""

    class StageStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    prescription = models.ForeignKey(
        Prescription, on_delete=models.CASCADE, related_name="instances"
    )
    subject_id = models.PositiveIntegerField()
    scheduled_date = models.DateField()
    scheduled_time = models.TimeField()
    preparation_status = models.CharField(
        max_length=10, choices=StageStatus.choices, default=StageStatus.PENDING
    )
    verification_status = models.CharField(
        max_length=10, choices=StageStatus.choices, default=StageStatus.PENDING
    )
    dispensing_status = models.CharField(
        max_length=10, choices=StageStatus.choices, default=StageStatus.PENDING
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["scheduled_date", "scheduled_time"]
        constraints = [
            models.UniqueConstraint(
                fields=["prescription", "scheduled_date", "scheduled_time"],
                name="unique_prescription_slot",
            ),
        ]
        indexes = [
            models.Index(fields=["scheduled_date", "dispensing_status"], name="instance_date_dispensing_idx"),
            models.Index(fields=["subject_id", "scheduled_date"], name="instance_subject_date_idx"),
        ]

    def __str__(self):
        return f"{self.prescription} @ {self.scheduled_date} {self.scheduled_time:%H:%M}"

    @property
    def scheduled_at(self):
        """Naive facility-local datetime of the dose."""
        return datetime.datetime.combine(self.scheduled_date, self.scheduled_time)

    def is_overdue(self, now):
        """Dispensing still pending after the scheduled time (*now* is naive local)."""
        return (
            self.dispensing_status == self.StageStatus.PENDING
            and self.scheduled_at < now
        )
