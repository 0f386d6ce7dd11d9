import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Task",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("subject_id", models.PositiveIntegerField(help_text="Resident the task belongs to")),
                ("kind", models.CharField(choices=[
                    ("vital_signs", "Vital signs"),
                    ("blood_glucose", "Blood glucose"),
                    ("body_weight", "Body weight"),
                    ("catheter_change", "Urinary catheter change"),
                    ("feeding_tube_change", "Feeding tube change"),
                    ("wound_care", "Wound care"),
                    ("annual_checkup", "Annual health checkup"),
                    ("medication_consent", "Medication self-keeping consent"),
                ], max_length=32)),
                ("frequency_unit", models.CharField(choices=[
                    ("hourly", "Hourly"),
                    ("daily", "Daily"),
                    ("weekly", "Weekly"),
                    ("monthly", "Monthly"),
                    ("yearly", "Yearly"),
                ], default="daily", max_length=16)),
                ("frequency_value", models.PositiveIntegerField(default=1)),
                ("specific_times", models.JSONField(blank=True, default=list)),
                ("specific_days_of_week", models.JSONField(blank=True, default=list)),
                ("specific_days_of_month", models.JSONField(blank=True, default=list)),
                ("last_completed_at", models.DateTimeField(blank=True, null=True)),
                ("next_due_at", models.DateTimeField()),
                ("is_recurring", models.BooleanField(default=True)),
                ("end_date", models.DateField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["next_due_at"],
                "indexes": [
                    models.Index(fields=["subject_id", "kind"], name="task_subject_kind_idx"),
                    models.Index(fields=["next_due_at"], name="task_next_due_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CompletionRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("record_date", models.DateField()),
                ("record_time", models.TimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("recorded_at", models.DateTimeField(auto_now_add=True)),
                ("task", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="completions",
                    to="tasks.task",
                )),
            ],
            options={
                "indexes": [
                    models.Index(fields=["task", "record_date", "record_time"], name="completion_task_date_idx"),
                ],
            },
        ),
    ]
