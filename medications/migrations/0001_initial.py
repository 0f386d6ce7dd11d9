import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Prescription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("subject_id", models.PositiveIntegerField(help_text="Resident the prescription is for")),
                ("medication_name", models.CharField(max_length=255)),
                ("frequency_type", models.CharField(choices=[
                    ("daily", "Daily"),
                    ("every_x_days", "Every X days"),
                    ("weekly_days", "On weekdays"),
                    ("odd_even_days", "Odd or even days"),
                    ("every_x_months", "Every X months"),
                ], default="daily", max_length=20)),
                ("frequency_value", models.PositiveIntegerField(default=1)),
                ("specific_weekdays", models.JSONField(blank=True, default=list)),
                ("odd_even", models.CharField(choices=[
                    ("odd", "Odd days"),
                    ("even", "Even days"),
                    ("none", "Not applicable"),
                ], default="none", max_length=4)),
                ("time_slots", models.JSONField(blank=True, default=list)),
                ("start_date", models.DateField()),
                ("start_time", models.TimeField(blank=True, null=True)),
                ("end_date", models.DateField(blank=True, null=True)),
                ("end_time", models.TimeField(blank=True, null=True)),
                ("status", models.CharField(choices=[
                    ("active", "Active"),
                    ("inactive", "Inactive"),
                    ("pending_change", "Pending change"),
                ], default="active", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["subject_id", "medication_name"],
                "indexes": [
                    models.Index(fields=["status", "start_date"], name="prescription_status_start_idx"),
                    models.Index(fields=["subject_id", "status"], name="prescription_subject_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("end_date__isnull", True), ("end_date__gte", models.F("start_date")), _connector="OR"),
                        name="prescription_start_before_end",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ScheduledInstance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("subject_id", models.PositiveIntegerField()),
                ("scheduled_date", models.DateField()),
                ("scheduled_time", models.TimeField()),
                ("preparation_status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=10)),
                ("verification_status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=10)),
                ("dispensing_status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=10)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("prescription", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="instances",
                    to="medications.prescription",
                )),
            ],
            options={
                "ordering": ["scheduled_date", "scheduled_time"],
                "indexes": [
                    models.Index(fields=["scheduled_date", "dispensing_status"], name="instance_date_dispensing_idx"),
                    models.Index(fields=["subject_id", "scheduled_date"], name="instance_subject_date_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("prescription", "scheduled_date", "scheduled_time"),
                        name="unique_prescription_slot",
                    ),
                ],
            },
        ),
    ]
