import datetime
from io import StringIO
from unittest import mock

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models.query import QuerySet
from django.test import Client, SimpleTestCase, TestCase
from django.urls import reverse

from .models import Prescription, ScheduledInstance
from .services import (
    generate_instances_for_date, generate_instances_for_range, overdue_counts_by_date,
    overdue_instances,
)
from .views import MAX_OVERDUE_SPAN_DAYS
from .window import ValidityWindow

# 2025-01-10 is a Friday.
START = datetime.date(2025, 1, 10)
EIGHT = datetime.time(8, 0)
TWENTY = datetime.time(20, 0)


def _day(offset):
    return START + datetime.timedelta(days=offset)


def _prescription(**kwargs):
    fields = {
        "subject_id": 1,
        "medication_name": "Amlodipine 5mg",
        "time_slots": ["08:00", "20:00"],
        "start_date": START,
    }
    fields.update(kwargs)
    return Prescription.objects.create(**fields)


def _slots(prescription):
    return list(
        prescription.instances.order_by("scheduled_date", "scheduled_time")
        .values_list("scheduled_date", "scheduled_time")
    )


class ValidityWindowTests(SimpleTestCase):

    def test_whole_days_by_default(self):
        window = ValidityWindow(START, end_date=_day(2))
        self.assertTrue(window.contains(START, datetime.time(0, 0)))
        self.assertTrue(window.contains(_day(2), datetime.time(23, 59)))
        self.assertFalse(window.contains(_day(-1), TWENTY))
        self.assertFalse(window.contains(_day(3), EIGHT))

    def test_boundary_times(self):
        window = ValidityWindow(START, datetime.time(12, 0), _day(2), datetime.time(12, 0))
        self.assertFalse(window.contains(START, EIGHT))
        self.assertTrue(window.contains(START, datetime.time(12, 0)))
        self.assertTrue(window.contains(_day(2), datetime.time(12, 0)))
        self.assertFalse(window.contains(_day(2), TWENTY))

    def test_open_ended(self):
        self.assertTrue(ValidityWindow(START).contains(_day(400), TWENTY))


class PrescriptionModelTests(TestCase):

    def test_slot_identity_is_unique(self):
        """A prescription can only have one instance per date and time."""
        prescription = _prescription()
        ScheduledInstance.objects.create(
            prescription=prescription, subject_id=1, scheduled_date=START, scheduled_time=EIGHT,
        )
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                ScheduledInstance.objects.create(
                    prescription=prescription, subject_id=1,
                    scheduled_date=START, scheduled_time=EIGHT,
                )

    def test_end_date_not_before_start(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                _prescription(end_date=_day(-1))

    def test_clean_rejects_bad_slot(self):
        prescription = Prescription(
            subject_id=1, medication_name="Metformin", start_date=START,
            time_slots=["8 o'clock"],
        )
        with self.assertRaises(ValidationError) as ctx:
            prescription.clean()
        self.assertIn("time_slots", ctx.exception.message_dict)

    def test_is_due_on_every_other_day(self):
        prescription = _prescription(frequency_type="every_x_days", frequency_value=2)
        self.assertTrue(prescription.is_due_on(_day(2)))
        self.assertFalse(prescription.is_due_on(_day(3)))

    def test_zero_interval_saved_anyway_means_every_day(self):
        prescription = _prescription(frequency_type="every_x_days", frequency_value=0)
        self.assertTrue(prescription.is_due_on(_day(1)))
        self.assertEqual(generate_instances_for_date(_day(1)).created, 2)

    def test_full_clean_rejects_zero_interval(self):
        prescription = Prescription(
            subject_id=1, medication_name="Metformin", start_date=START,
            time_slots=["08:00"], frequency_type="every_x_days", frequency_value=0,
        )
        with self.assertRaises(ValidationError) as ctx:
            prescription.full_clean()
        self.assertIn("frequency_value", ctx.exception.message_dict)

    def test_clean_rejects_bad_weekdays(self):
        prescription = Prescription(
            subject_id=1, medication_name="Metformin", start_date=START,
            frequency_type="weekly_days", specific_weekdays=[2, 9],
        )
        with self.assertRaises(ValidationError) as ctx:
            prescription.clean()
        self.assertIn("specific_weekdays", ctx.exception.message_dict)

    def test_instance_str(self):
        instance = ScheduledInstance(
            prescription=_prescription(), subject_id=1,
            scheduled_date=START, scheduled_time=EIGHT,
        )
        self.assertEqual(str(instance), "Amlodipine 5mg for resident 1 @ 2025-01-10 08:00")

    def test_overdue_needs_pending_dispensing(self):
        instance = ScheduledInstance(
            prescription=_prescription(), subject_id=1,
            scheduled_date=START, scheduled_time=EIGHT,
        )
        later = datetime.datetime(2025, 1, 10, 9, 0)
        self.assertTrue(instance.is_overdue(later))
        self.assertFalse(instance.is_overdue(datetime.datetime(2025, 1, 10, 7, 0)))
        instance.dispensing_status = ScheduledInstance.StageStatus.COMPLETED
        self.assertFalse(instance.is_overdue(later))


class GenerationTests(TestCase):

    def test_daily_prescription_creates_each_slot(self):
        prescription = _prescription(end_date=_day(2))
        result = generate_instances_for_date(START)
        self.assertEqual(result.created, 2)
        self.assertEqual(result.prescriptions_processed, 1)
        self.assertTrue(result.success)
        self.assertEqual(_slots(prescription), [(START, EIGHT), (START, TWENTY)])

    def test_rerun_creates_nothing(self):
        """Generation is idempotent and leaves workflow progress alone."""
        prescription = _prescription()
        generate_instances_for_date(START)
        prescription.instances.filter(scheduled_time=EIGHT).update(
            preparation_status=ScheduledInstance.StageStatus.COMPLETED,
        )

        result = generate_instances_for_date(START)

        self.assertEqual(result.created, 0)
        self.assertEqual(prescription.instances.count(), 2)
        self.assertEqual(
            prescription.instances.get(scheduled_time=EIGHT).preparation_status,
            ScheduledInstance.StageStatus.COMPLETED,
        )

    def test_after_end_date_prunes_later_instances(self):
        prescription = _prescription(end_date=_day(2))
        generate_instances_for_date(START)
        ScheduledInstance.objects.create(
            prescription=prescription, subject_id=1,
            scheduled_date=_day(3), scheduled_time=EIGHT,
        )

        result = generate_instances_for_date(_day(3))

        self.assertEqual(result.created, 0)
        self.assertEqual(result.pruned, 1)
        self.assertEqual(_slots(prescription), [(START, EIGHT), (START, TWENTY)])

    def test_shrunk_window_prunes_existing_instances(self):
        prescription = _prescription(end_date=_day(2))
        generate_instances_for_range(START, _day(2))
        self.assertEqual(prescription.instances.count(), 6)

        prescription.end_date = _day(1)
        prescription.end_time = datetime.time(12, 0)
        prescription.save()
        result = generate_instances_for_date(_day(1))

        self.assertEqual(result.created, 0)
        self.assertEqual(result.pruned, 3)
        self.assertEqual(
            _slots(prescription), [(START, EIGHT), (START, TWENTY), (_day(1), EIGHT)],
        )

    def test_moved_start_prunes_before_start(self):
        prescription = _prescription()
        generate_instances_for_date(START)
        prescription.start_date = _day(5)
        prescription.save()

        result = generate_instances_for_date(START)

        self.assertEqual(result.created, 0)
        self.assertEqual(result.pruned, 2)

    def test_start_time_skips_earlier_slots(self):
        prescription = _prescription(start_time=datetime.time(12, 0))
        generate_instances_for_date(START)
        generate_instances_for_date(_day(1))
        self.assertEqual(
            _slots(prescription), [(START, TWENTY), (_day(1), EIGHT), (_day(1), TWENTY)],
        )

    def test_end_time_skips_later_slots(self):
        prescription = _prescription(end_date=START, end_time=datetime.time(12, 0))
        generate_instances_for_date(START)
        self.assertEqual(_slots(prescription), [(START, EIGHT)])

    def test_before_start_date_creates_nothing(self):
        _prescription()
        self.assertEqual(generate_instances_for_date(_day(-1)).created, 0)

    def test_every_x_days(self):
        prescription = _prescription(frequency_type="every_x_days", frequency_value=2)
        generate_instances_for_range(START, _day(4))
        self.assertEqual(
            sorted({day for day, _ in _slots(prescription)}), [START, _day(2), _day(4)],
        )

    def test_weekly_days(self):
        prescription = _prescription(
            frequency_type="weekly_days", specific_weekdays=[5], time_slots=["7A"],
        )
        generate_instances_for_range(START, _day(13))
        self.assertEqual(
            _slots(prescription),
            [(START, datetime.time(7, 0)), (_day(7), datetime.time(7, 0))],
        )

    def test_odd_even_days(self):
        prescription = _prescription(
            frequency_type="odd_even_days", odd_even="even", time_slots=["12N"],
        )
        generate_instances_for_range(START, _day(3))
        self.assertEqual(
            [day for day, _ in _slots(prescription)], [START, _day(2)],
        )

    def test_every_x_months(self):
        prescription = _prescription(frequency_type="every_x_months", frequency_value=1)
        for day in (START, _day(1), datetime.date(2025, 2, 10)):
            generate_instances_for_date(day)
        self.assertEqual(
            sorted({day for day, _ in _slots(prescription)}),
            [START, datetime.date(2025, 2, 10)],
        )

    def test_inactive_still_generated_pending_change_skipped(self):
        inactive = _prescription(status=Prescription.Status.INACTIVE)
        pending = _prescription(status=Prescription.Status.PENDING_CHANGE)
        result = generate_instances_for_date(START)
        self.assertEqual(result.prescriptions_processed, 1)
        self.assertEqual(inactive.instances.count(), 2)
        self.assertEqual(pending.instances.count(), 0)

    def test_subject_filter(self):
        _prescription()
        other = _prescription(subject_id=2)
        result = generate_instances_for_date(START, subject_id=2)
        self.assertEqual(result.created, 2)
        self.assertEqual(ScheduledInstance.objects.filter(subject_id=2).count(), 2)
        self.assertEqual(ScheduledInstance.objects.count(), other.instances.count())

    def test_unparseable_slot_reported(self):
        prescription = _prescription(time_slots=["08:00", "after lunch"])
        result = generate_instances_for_date(START)
        self.assertEqual(result.created, 1)
        self.assertFalse(result.success)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0].prescription_id, prescription.pk)
        self.assertEqual(result.errors[0].scheduled_time, "after lunch")

    def test_invalid_frequency_reported(self):
        _prescription(frequency_type="fortnightly")
        result = generate_instances_for_date(START)
        self.assertEqual(result.created, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertIsNone(result.errors[0].scheduled_time)

    def test_bulk_failure_falls_back_to_single_inserts(self):
        prescription = _prescription()
        with mock.patch.object(
            QuerySet, "bulk_create", side_effect=DatabaseError("bulk insert unavailable"),
        ):
            with self.assertLogs("medications.store", level="WARNING"):
                result = generate_instances_for_date(START)
        self.assertEqual(result.created, 2)
        self.assertEqual(result.errors, [])
        self.assertEqual(prescription.instances.count(), 2)

    def test_single_insert_failures_collected(self):
        _prescription()
        with mock.patch.object(
            QuerySet, "bulk_create", side_effect=DatabaseError("bulk insert unavailable"),
        ), mock.patch.object(
            ScheduledInstance, "save", side_effect=DatabaseError("disk full"),
        ):
            result = generate_instances_for_date(START)
        self.assertEqual(result.created, 0)
        self.assertEqual(len(result.errors), 2)
        self.assertEqual(result.errors[0].as_dict()["message"], "disk full")
        self.assertEqual(ScheduledInstance.objects.count(), 0)

    def test_range_counts_every_day(self):
        _prescription(end_date=_day(1))
        result = generate_instances_for_range(START, _day(2))
        self.assertEqual(result.created, 4)
        self.assertEqual(result.prescriptions_processed, 3)


class OverdueTests(TestCase):

    def setUp(self):
        self.prescription = _prescription()
        generate_instances_for_date(START)

    def test_only_past_pending_doses(self):
        now = datetime.datetime(2025, 1, 10, 12, 0)
        overdue = overdue_instances(now)
        self.assertEqual([i.scheduled_time for i in overdue], [EIGHT])

        self.prescription.instances.update(
            dispensing_status=ScheduledInstance.StageStatus.COMPLETED,
        )
        self.assertEqual(overdue_instances(now), [])

    def test_counts_by_date(self):
        now = datetime.datetime(2025, 1, 11, 9, 0)
        generate_instances_for_date(_day(1))
        counts = overdue_counts_by_date([_day(-1), START, _day(1)], now=now)
        self.assertEqual(counts, {_day(-1): 0, START: 2, _day(1): 1})

    def test_counts_for_other_subject(self):
        now = datetime.datetime(2025, 1, 10, 23, 0)
        self.assertEqual(overdue_counts_by_date([START], now=now, subject_id=2), {START: 0})


class BuildTodayCommandTests(TestCase):

    def test_generates_for_date(self):
        _prescription()
        out = StringIO()
        call_command("build_today", "--date", "2025-01-10", stdout=out)
        output = out.getvalue()
        self.assertIn(
            "Generated 2 dispensing instance(s) for 2025-01-10 from 1 prescription check(s).",
            output,
        )
        self.assertIn("Pruned 0 instance(s)", output)
        self.assertIn("Done.", output)

    def test_range(self):
        _prescription()
        out = StringIO()
        call_command(
            "build_today", "--date", "2025-01-10", "--until", "2025-01-12", stdout=out,
        )
        self.assertIn("Generated 6 dispensing instance(s) for 2025-01-10 to 2025-01-12", out.getvalue())

    def test_until_before_date(self):
        with self.assertRaises(CommandError):
            call_command(
                "build_today", "--date", "2025-01-10", "--until", "2025-01-09",
                stdout=StringIO(),
            )

    def test_errors_reported(self):
        prescription = _prescription(time_slots=["noonish"])
        out, err = StringIO(), StringIO()
        call_command("build_today", "--date", "2025-01-10", stdout=out, stderr=err)
        self.assertIn(f"prescription {prescription.pk}", err.getvalue())
        self.assertIn("Done with 1 error(s).", out.getvalue())


class MedicationViewTests(TestCase):

    def setUp(self):
        self.user = User.objects.create_user(username="testuser", password="testpass")
        self.client = Client()
        self.client.login(username="testuser", password="testpass")
        self.prescription = _prescription()

    def test_generate_requires_login(self):
        self.client.logout()
        response = self.client.post(reverse("medications:generate"), {"date": "2025-01-10"})
        self.assertEqual(response.status_code, 302)

    def test_generate_requires_post(self):
        response = self.client.get(reverse("medications:generate"))
        self.assertEqual(response.status_code, 405)

    def test_generate(self):
        response = self.client.post(reverse("medications:generate"), {"date": "2025-01-10"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["created"], 2)
        self.assertEqual(body["date"], "2025-01-10")
        self.assertIsNone(body["until"])

    def test_generate_range(self):
        response = self.client.post(
            reverse("medications:generate"),
            {"date": "2025-01-10", "until": "2025-01-11", "subject_id": "1"},
        )
        self.assertEqual(response.json()["created"], 4)

    def test_generate_rejects_bad_input(self):
        url = reverse("medications:generate")
        self.assertEqual(self.client.post(url, {"date": "tomorrow"}).status_code, 400)
        self.assertEqual(self.client.post(url, {"subject_id": "x"}).status_code, 400)
        response = self.client.post(url, {"date": "2025-01-10", "until": "2025-01-09"})
        self.assertEqual(response.status_code, 400)

    def test_overdue(self):
        generate_instances_for_date(START)
        response = self.client.get(
            reverse("medications:overdue"), {"from": "2025-01-09", "to": "2025-01-10"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"counts": {"2025-01-09": 0, "2025-01-10": 2}, "total": 2},
        )

    def test_overdue_rejects_reversed_range(self):
        response = self.client.get(
            reverse("medications:overdue"), {"from": "2025-01-10", "to": "2025-01-09"},
        )
        self.assertEqual(response.status_code, 400)

    def test_overdue_caps_span(self):
        url = reverse("medications:overdue")
        last_allowed = START + datetime.timedelta(days=MAX_OVERDUE_SPAN_DAYS - 1)
        response = self.client.get(url, {"from": START.isoformat(), "to": last_allowed.isoformat()})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["counts"]), MAX_OVERDUE_SPAN_DAYS)

        too_far = last_allowed + datetime.timedelta(days=1)
        response = self.client.get(url, {"from": START.isoformat(), "to": too_far.isoformat()})
        self.assertEqual(response.status_code, 400)
