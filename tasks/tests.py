import datetime
from io import StringIO
from unittest import mock

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from .exceptions import InvalidRule, ScheduleExhausted, StaleState, StoreError
from .models import CompletionRecord, Task
from .recurrence import (
    RecurrenceRule, describe, matches, parse_time, project_next, select_anchor,
)
from .services import Reconciler, reconcile_task, tasks_by_status
from .status import (
    DUE_SOON, OVERDUE, PENDING_TODAY, SCHEDULED, AwaitingOccurrence, NotStarted,
    Satisfied, classify_status, schedule_state,
)
from .store import TaskRecordStore

# 2026-03-02 is a Monday.
MONDAY = datetime.date(2026, 3, 2)


def _day(offset):
    return MONDAY + datetime.timedelta(days=offset)


def _at(day, hour=8, minute=0):
    return timezone.make_aware(
        datetime.datetime.combine(day, datetime.time(hour, minute))
    )


def _make_task(kind="vital_signs", next_due=None, created=MONDAY, **kwargs):
    """Helper: create a task whose created_at falls on *created*."""
    task = Task.objects.create(
        subject_id=kwargs.pop("subject_id", 1),
        kind=kind,
        next_due_at=next_due or _at(MONDAY),
        **kwargs,
    )
    Task.objects.filter(pk=task.pk).update(created_at=_at(created, 0, 0))
    task.refresh_from_db()
    return task


def _record(task, day, hour=None, minute=0):
    """Store a completion without firing the reconciliation signal."""
    record_time = datetime.time(hour, minute) if hour is not None else None
    CompletionRecord.objects.bulk_create([
        CompletionRecord(task=task, record_date=day, record_time=record_time),
    ])


class ParseTimeTests(SimpleTestCase):

    def test_clock_formats(self):
        self.assertEqual(parse_time("08:00"), datetime.time(8, 0))
        self.assertEqual(parse_time("7:05"), datetime.time(7, 5))
        self.assertEqual(parse_time("20:15:45"), datetime.time(20, 15))

    def test_dispensing_shorthand(self):
        self.assertEqual(parse_time("7A"), datetime.time(7, 0))
        self.assertEqual(parse_time("12A"), datetime.time(0, 0))
        self.assertEqual(parse_time("12N"), datetime.time(12, 0))
        self.assertEqual(parse_time("6P"), datetime.time(18, 0))
        self.assertEqual(parse_time("12P"), datetime.time(12, 0))
        self.assertEqual(parse_time("7:30p"), datetime.time(19, 30))

    def test_time_objects_lose_seconds(self):
        self.assertEqual(parse_time(datetime.time(9, 30, 12)), datetime.time(9, 30))

    def test_garbage_raises(self):
        for value in ("25:00", "later", "", "8:7"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidRule):
                    parse_time(value)


class RecurrenceRuleTests(SimpleTestCase):

    def test_unknown_task_unit(self):
        with self.assertRaises(InvalidRule):
            RecurrenceRule.for_task("fortnightly")

    def test_unknown_prescription_frequency(self):
        with self.assertRaises(InvalidRule):
            RecurrenceRule.for_prescription("weekly")

    def test_rule_interval_must_be_positive(self):
        with self.assertRaises(InvalidRule):
            RecurrenceRule("daily", interval=0)

    def test_rule_weekday_out_of_range(self):
        with self.assertRaises(InvalidRule):
            RecurrenceRule("weekly", weekdays=frozenset({8}))

    def test_stored_zero_interval_falls_back_to_one(self):
        with self.assertLogs("tasks.recurrence", level="WARNING"):
            rule = RecurrenceRule.for_task("daily", 0)
        self.assertEqual(rule.interval, 1)
        with self.assertLogs("tasks.recurrence", level="WARNING"):
            rule = RecurrenceRule.for_prescription("every_x_days", "abc")
        self.assertEqual(rule.interval, 1)

    def test_stored_bad_day_numbers_dropped(self):
        with self.assertLogs("tasks.recurrence", level="WARNING"):
            rule = RecurrenceRule.for_task("weekly", weekdays=[0, 1, 8, "x"])
        self.assertEqual(rule.weekdays, frozenset({1}))

    def test_stored_bad_times_dropped(self):
        with self.assertLogs("tasks.recurrence", level="WARNING"):
            rule = RecurrenceRule.for_task("daily", times=["morning", "14:00"])
        self.assertEqual(rule.times, (datetime.time(14, 0),))

    def test_missing_interval_defaults_to_one(self):
        self.assertEqual(RecurrenceRule.for_task("daily", None).interval, 1)

    def test_prescription_dialect_translation(self):
        every_other = RecurrenceRule.for_prescription("every_x_days", 2)
        self.assertEqual((every_other.frequency, every_other.interval), ("daily", 2))
        daily = RecurrenceRule.for_prescription("daily", 5)
        self.assertEqual((daily.frequency, daily.interval), ("daily", 1))
        weekdays = RecurrenceRule.for_prescription("weekly_days", weekdays=[2, 4])
        self.assertEqual(weekdays.frequency, "weekly")
        self.assertEqual(weekdays.weekdays, frozenset({2, 4}))

    def test_steps_by_day(self):
        self.assertTrue(RecurrenceRule.for_task("daily", 3).steps_by_day)
        self.assertTrue(RecurrenceRule.for_task("weekly", weekdays=[1]).steps_by_day)
        self.assertFalse(RecurrenceRule.for_task("weekly").steps_by_day)
        self.assertFalse(RecurrenceRule.for_task("monthly").steps_by_day)
        self.assertFalse(RecurrenceRule.for_task("yearly").steps_by_day)

    def test_describe(self):
        self.assertEqual(describe(RecurrenceRule.for_task("daily")), "Daily")
        self.assertEqual(describe(RecurrenceRule.for_task("daily", 3)), "Every 3 days")
        self.assertEqual(
            describe(RecurrenceRule.for_task("weekly", weekdays=[5, 1, 3])),
            "Weekly on Mon, Wed, Fri",
        )
        self.assertEqual(
            describe(RecurrenceRule.for_task("monthly", 2, days_of_month=[15, 1])),
            "Every 2 months on day 1, 15",
        )
        self.assertEqual(
            describe(RecurrenceRule.for_prescription("odd_even_days", odd_even="odd")),
            "Odd days",
        )


class MatchesTests(SimpleTestCase):

    def test_daily_interval_anchored_on_creation(self):
        rule = RecurrenceRule.for_task("daily", 3)
        hits = [
            offset for offset in range(10)
            if matches(rule, _day(offset), select_anchor(_day(offset), None, MONDAY))
        ]
        self.assertEqual(hits, [0, 3, 6, 9])

    def test_completion_re_anchors_daily_interval(self):
        rule = RecurrenceRule.for_task("daily", 3)
        completed_on = _day(2)
        hits = [
            offset for offset in range(3, 12)
            if matches(rule, _day(offset), select_anchor(_day(offset), completed_on, MONDAY))
        ]
        self.assertEqual(hits, [5, 8, 11])

    def test_anchor_ignores_completion_on_or_after_day(self):
        self.assertEqual(select_anchor(_day(2), _day(2), MONDAY), MONDAY)
        self.assertEqual(select_anchor(_day(2), _day(5), MONDAY), MONDAY)
        self.assertEqual(select_anchor(_day(3), _day(2), MONDAY), _day(2))

    def test_daily_interval_never_matches_before_anchor(self):
        rule = RecurrenceRule.for_task("daily", 2)
        self.assertFalse(matches(rule, _day(-2), MONDAY))

    def test_hourly_and_daily_always_match(self):
        for unit in ("hourly", "daily"):
            with self.subTest(unit=unit):
                self.assertTrue(matches(RecurrenceRule.for_task(unit), _day(17)))

    def test_weekly_matches_exact_weekdays_over_four_weeks(self):
        rule = RecurrenceRule.for_task("weekly", weekdays=[1, 3, 5])
        hits = [_day(offset) for offset in range(28) if matches(rule, _day(offset))]
        self.assertEqual(len(hits), 12)
        self.assertEqual({day.isoweekday() for day in hits}, {1, 3, 5})

    def test_weekly_without_weekdays_never_matches(self):
        rule = RecurrenceRule.for_task("weekly")
        self.assertFalse(any(matches(rule, _day(offset)) for offset in range(7)))

    def test_monthly_days(self):
        rule = RecurrenceRule.for_task("monthly", days_of_month=[1, 15])
        self.assertTrue(matches(rule, datetime.date(2026, 4, 15)))
        self.assertFalse(matches(rule, datetime.date(2026, 4, 16)))

    def test_every_x_days_from_start(self):
        rule = RecurrenceRule.for_prescription("every_x_days", 2)
        start = datetime.date(2025, 1, 10)
        self.assertTrue(matches(rule, datetime.date(2025, 1, 14), anchor=start))
        self.assertFalse(matches(rule, datetime.date(2025, 1, 13), anchor=start))

    def test_odd_even_days(self):
        odd = RecurrenceRule.for_prescription("odd_even_days", odd_even="odd")
        even = RecurrenceRule.for_prescription("odd_even_days", odd_even="even")
        unset = RecurrenceRule.for_prescription("odd_even_days")
        day = datetime.date(2026, 3, 31)
        self.assertTrue(matches(odd, day))
        self.assertFalse(matches(even, day))
        self.assertFalse(matches(unset, day))

    def test_every_x_months_keeps_anchor_day(self):
        rule = RecurrenceRule.for_prescription("every_x_months", 2)
        start = datetime.date(2026, 1, 31)
        self.assertTrue(matches(rule, datetime.date(2026, 3, 31), anchor=start))
        self.assertTrue(matches(rule, datetime.date(2026, 5, 31), anchor=start))
        self.assertFalse(matches(rule, datetime.date(2026, 2, 28), anchor=start))
        self.assertFalse(matches(rule, datetime.date(2026, 4, 30), anchor=start))

    def test_every_x_months_does_not_clamp_short_months(self):
        rule = RecurrenceRule.for_prescription("every_x_months", 1)
        start = datetime.date(2026, 1, 31)
        self.assertFalse(matches(rule, datetime.date(2026, 4, 30), anchor=start))


class ProjectNextTests(SimpleTestCase):

    def test_non_recurring_returns_from_date(self):
        when = datetime.datetime(2026, 3, 2, 14, 0)
        rule = RecurrenceRule.for_task("daily")
        self.assertEqual(project_next(rule, when, recurring=False), when)

    def test_daily_interval_with_specific_time(self):
        rule = RecurrenceRule.for_task("daily", 2, times=["14:30", "20:00"])
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 9, 0)),
            datetime.datetime(2026, 3, 4, 14, 30),
        )

    def test_monitoring_default_time(self):
        rule = RecurrenceRule.for_task("daily")
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 17, 45),
                         default_time=datetime.time(8, 0)),
            datetime.datetime(2026, 3, 3, 8, 0),
        )

    def test_time_carried_over_without_policy(self):
        rule = RecurrenceRule.for_task("daily")
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 17, 45)),
            datetime.datetime(2026, 3, 3, 17, 45),
        )

    def test_weekly_next_configured_weekday(self):
        rule = RecurrenceRule.for_task("weekly", weekdays=[1, 4])
        monday = datetime.datetime(2026, 3, 2, 10, 0)
        self.assertEqual(project_next(rule, monday), datetime.datetime(2026, 3, 5, 10, 0))
        friday = datetime.datetime(2026, 3, 6, 10, 0)
        self.assertEqual(project_next(rule, friday), datetime.datetime(2026, 3, 9, 10, 0))

    def test_weekly_same_weekday_moves_a_full_week(self):
        rule = RecurrenceRule.for_task("weekly", weekdays=[1])
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 10, 0)),
            datetime.datetime(2026, 3, 9, 10, 0),
        )

    def test_weekly_without_weekdays_adds_weeks(self):
        rule = RecurrenceRule.for_task("weekly", 2)
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 10, 0)),
            datetime.datetime(2026, 3, 16, 10, 0),
        )

    def test_monthly_later_day_this_month(self):
        rule = RecurrenceRule.for_task("monthly", days_of_month=[31])
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 1, 20, 9, 0)),
            datetime.datetime(2026, 1, 31, 9, 0),
        )

    def test_monthly_rolls_past_month_without_the_day(self):
        rule = RecurrenceRule.for_task("monthly", days_of_month=[31])
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 2, 1, 9, 0)),
            datetime.datetime(2026, 3, 31, 9, 0),
        )

    def test_monthly_interval_picks_smallest_day(self):
        rule = RecurrenceRule.for_task("monthly", 2, days_of_month=[20, 5])
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 1, 25, 9, 0)),
            datetime.datetime(2026, 3, 5, 9, 0),
        )

    def test_monthly_without_days_adds_months(self):
        rule = RecurrenceRule.for_task("monthly", 3)
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 1, 31, 9, 0)),
            datetime.datetime(2026, 4, 30, 9, 0),
        )

    def test_yearly_clamps_leap_day(self):
        rule = RecurrenceRule.for_task("yearly")
        self.assertEqual(
            project_next(rule, datetime.datetime(2024, 2, 29, 9, 0)),
            datetime.datetime(2025, 2, 28, 9, 0),
        )

    def test_hourly_moves_a_day_then_applies_time_policy(self):
        rule = RecurrenceRule.for_task("hourly", 4)
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 22, 0),
                         default_time=datetime.time(8, 0)),
            datetime.datetime(2026, 3, 3, 8, 0),
        )
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 22, 0)),
            datetime.datetime(2026, 3, 3, 22, 0),
        )

    def test_hourly_specific_time(self):
        rule = RecurrenceRule.for_task("hourly", times=["06:30"])
        self.assertEqual(
            project_next(rule, datetime.datetime(2026, 3, 2, 22, 0)),
            datetime.datetime(2026, 3, 3, 6, 30),
        )


class ClassifyStatusTests(SimpleTestCase):

    def setUp(self):
        self.now = _at(datetime.date(2026, 3, 10), 10, 0)
        self.today = datetime.date(2026, 3, 10)

    def _status(self, due, **kwargs):
        return classify_status(due, self.now, **kwargs)

    def test_timestamp_buckets(self):
        cases = [
            (_at(self.today - datetime.timedelta(days=1), 23, 0), OVERDUE),
            (_at(self.today, 6, 0), PENDING_TODAY),
            (_at(self.today, 23, 30), PENDING_TODAY),
            (_at(self.today + datetime.timedelta(days=1), 8, 0), DUE_SOON),
            (_at(self.today + datetime.timedelta(days=1), 10, 0), DUE_SOON),
            (_at(self.today + datetime.timedelta(days=1), 10, 1), SCHEDULED),
            (_at(self.today + datetime.timedelta(days=5), 8, 0), SCHEDULED),
        ]
        for due, expected in cases:
            with self.subTest(due=due):
                self.assertEqual(self._status(due), expected)

    def test_status_moves_forward_as_due_time_approaches(self):
        dues = [
            _at(self.today + datetime.timedelta(days=10)),
            _at(self.today + datetime.timedelta(days=1)),
            _at(self.today),
            _at(self.today - datetime.timedelta(days=1)),
        ]
        self.assertEqual(
            [self._status(due) for due in dues],
            [SCHEDULED, DUE_SOON, PENDING_TODAY, OVERDUE],
        )

    def test_satisfied_occurrence_is_scheduled(self):
        due = _at(self.today - datetime.timedelta(days=1))
        self.assertEqual(
            self._status(due, last_completed_at=due + datetime.timedelta(minutes=5)),
            SCHEDULED,
        )

    def test_completion_before_due_does_not_satisfy(self):
        due = _at(self.today - datetime.timedelta(days=1))
        self.assertEqual(
            self._status(due, last_completed_at=due - datetime.timedelta(days=1)),
            OVERDUE,
        )

    def test_document_buckets(self):
        cases = [
            (self.today - datetime.timedelta(days=3), OVERDUE),
            (self.today, PENDING_TODAY),
            (self.today + datetime.timedelta(days=1), DUE_SOON),
            (self.today + datetime.timedelta(days=14), DUE_SOON),
            (self.today + datetime.timedelta(days=15), SCHEDULED),
        ]
        for day, expected in cases:
            with self.subTest(day=day):
                self.assertEqual(self._status(_at(day, 23, 0), date_only=True), expected)

    def test_document_completed_on_due_date(self):
        due = _at(self.today - datetime.timedelta(days=3), 23, 0)
        completed = _at(self.today - datetime.timedelta(days=3), 9, 0)
        self.assertEqual(
            self._status(due, last_completed_at=completed, date_only=True), SCHEDULED,
        )

    def test_document_uses_supplied_completion_predicate(self):
        due = _at(self.today - datetime.timedelta(days=3))
        seen = []

        def completed_since(day):
            seen.append(day)
            return True

        self.assertEqual(
            self._status(due, date_only=True, completed_since=completed_since), SCHEDULED,
        )
        self.assertEqual(seen, [self.today - datetime.timedelta(days=3)])

    def test_missing_due_date_is_scheduled(self):
        self.assertEqual(self._status(None), SCHEDULED)

    def test_schedule_state(self):
        due = _at(self.today)
        self.assertEqual(schedule_state(None, due), NotStarted(due=due))
        earlier = due - datetime.timedelta(hours=1)
        self.assertIsInstance(schedule_state(earlier, due), AwaitingOccurrence)
        self.assertEqual(schedule_state(due, due), Satisfied(completed_at=due, next_due=due))


class TaskModelTests(TestCase):

    def test_document_kind_uses_dates(self):
        now = _at(MONDAY, 10, 0)
        document = _make_task(kind="annual_checkup", next_due=_at(_day(10)))
        self.assertEqual(document.status(now), DUE_SOON)
        monitoring = _make_task(kind="vital_signs", next_due=_at(_day(10)))
        self.assertEqual(monitoring.status(now), SCHEDULED)

    def test_monitoring_kind_projects_to_eight(self):
        task = _make_task(kind="blood_glucose")
        self.assertEqual(
            task.project_next(_at(MONDAY, 17, 0)), _at(_day(1), 8, 0),
        )

    def test_nursing_kind_keeps_time(self):
        task = _make_task(kind="wound_care", frequency_value=2)
        self.assertEqual(task.project_next(_at(MONDAY, 17, 0)), _at(_day(2), 17, 0))

    def test_clean_rejects_unknown_unit(self):
        task = _make_task()
        task.frequency_unit = "fortnightly"
        with self.assertRaises(ValidationError) as ctx:
            task.clean()
        self.assertIn("frequency_unit", ctx.exception.message_dict)

    def test_unknown_unit_projects_as_daily(self):
        task = _make_task(kind="wound_care")
        task.frequency_unit = "fortnightly"
        with self.assertLogs("tasks.models", level="WARNING"):
            self.assertEqual(task.project_next(_at(MONDAY, 17, 0)), _at(_day(1), 17, 0))

    def test_clean_rejects_bad_times_and_days(self):
        task = _make_task()
        task.specific_times = ["morning"]
        task.specific_days_of_month = [0, 32]
        with self.assertRaises(ValidationError) as ctx:
            task.clean()
        self.assertIn("specific_times", ctx.exception.message_dict)
        self.assertIn("specific_days_of_month", ctx.exception.message_dict)

    def test_full_clean_rejects_zero_interval(self):
        task = _make_task()
        task.frequency_value = 0
        with self.assertRaises(ValidationError) as ctx:
            task.full_clean()
        self.assertIn("frequency_value", ctx.exception.message_dict)

    def test_zero_interval_saved_anyway_projects_one_day(self):
        task = _make_task(kind="wound_care", frequency_value=0)
        self.assertEqual(task.project_next(_at(MONDAY, 17, 0)), _at(_day(1), 17, 0))

    def test_unparseable_time_saved_anyway_is_skipped(self):
        task = _make_task(kind="wound_care", specific_times=["morning"])
        self.assertEqual(task.project_next(_at(MONDAY, 17, 0)), _at(_day(1), 17, 0))

    def test_state(self):
        task = _make_task()
        self.assertIsInstance(task.state, NotStarted)


class FakeStore:
    """In-memory record store keyed only by date."""

    def __init__(self, completions=()):
        self.completions = set(completions)
        self.updates = []

    def find_latest_completion(self, task_id):
        if not self.completions:
            return None
        return max(self.completions), None

    def exists_completion(self, task_id, day):
        return day in self.completions

    def update_task_schedule(self, task_id, last_completed_at, next_due_at,
                             expected_next_due_at=None):
        self.updates.append((last_completed_at, next_due_at))


class ReconcilerWithoutDatabaseTests(SimpleTestCase):

    def _task(self):
        return Task(
            pk=7, subject_id=1, kind="vital_signs", frequency_unit="weekly",
            specific_days_of_week=[1, 3, 5], next_due_at=_at(MONDAY),
        )

    def test_walks_to_first_unrecorded_weekday(self):
        store = FakeStore({MONDAY, _day(2)})
        task = Reconciler(store=store, cutoff_date=datetime.date(2025, 1, 1)).reconcile(
            self._task(),
        )
        self.assertEqual(task.next_due_at, _at(_day(4)))
        self.assertEqual(task.last_completed_at, _at(_day(2), 0, 0))
        self.assertEqual(store.updates, [(_at(_day(2), 0, 0), _at(_day(4)))])

    def test_cutoff_skips_store_write(self):
        store = FakeStore({MONDAY})
        task = self._task()
        Reconciler(store=store, cutoff_date=MONDAY).reconcile(task)
        self.assertEqual(store.updates, [])
        self.assertEqual(task.next_due_at, _at(MONDAY))
        self.assertIsNone(task.last_completed_at)


class ReconcilerTests(TestCase):

    def setUp(self):
        self.reconciler = Reconciler(cutoff_date=datetime.date(2025, 1, 1))
        self.task = _make_task(kind="vital_signs")

    def _reconcile(self, task=None):
        task = task or self.task
        self.reconciler.reconcile(task)
        task.refresh_from_db()
        return task

    def test_no_completions_resets_to_today(self):
        Task.objects.filter(pk=self.task.pk).update(
            last_completed_at=_at(MONDAY, 9, 0), next_due_at=_at(_day(1)),
        )
        self.task.refresh_from_db()
        task = self._reconcile()
        self.assertIsNone(task.last_completed_at)
        self.assertEqual(task.next_due_at, _at(timezone.localdate(), 8, 0))

    def test_batch_of_completions_advances_past_all(self):
        for offset in range(3):
            _record(self.task, _day(offset), 9, 15)
        task = self._reconcile()
        self.assertEqual(task.last_completed_at, _at(_day(2), 9, 15))
        self.assertEqual(task.next_due_at, _at(_day(3)))

    def test_gap_is_surfaced(self):
        _record(self.task, MONDAY)
        _record(self.task, _day(2))
        task = self._reconcile()
        self.assertEqual(task.next_due_at, _at(_day(1)))
        self.assertEqual(task.last_completed_at, _at(_day(2), 0, 0))

    def test_latest_completion_orders_by_date_then_time(self):
        _record(self.task, _day(1), 19, 0)
        _record(self.task, _day(1), 7, 0)
        _record(self.task, MONDAY, 22, 0)
        task = self._reconcile()
        self.assertEqual(task.last_completed_at, _at(_day(1), 19, 0))

    def test_daily_interval_follows_completion(self):
        task = _make_task(kind="body_weight", frequency_value=3)
        _record(task, MONDAY)
        task = self._reconcile(task)
        self.assertEqual(task.next_due_at, _at(_day(3)))

    def test_weekly_rule(self):
        task = _make_task(
            kind="catheter_change", frequency_unit="weekly",
            specific_days_of_week=[1, 4], next_due=_at(MONDAY, 10, 0),
        )
        _record(task, MONDAY)
        task = self._reconcile(task)
        self.assertEqual(task.next_due_at, _at(_day(3), 10, 0))

    def test_specific_time_applied(self):
        task = _make_task(kind="vital_signs", specific_times=["14:00", "20:00"],
                          next_due=_at(MONDAY, 14, 0))
        _record(task, MONDAY, 14, 5)
        task = self._reconcile(task)
        self.assertEqual(task.next_due_at, _at(_day(1), 14, 0))

    def test_yearly_document_task_steps_a_year(self):
        task = _make_task(
            kind="annual_checkup", frequency_unit="yearly", next_due=_at(MONDAY, 0, 0),
        )
        _record(task, MONDAY)
        task = self._reconcile(task)
        self.assertEqual(task.next_due_at, _at(datetime.date(2027, 3, 2), 0, 0))

    def test_non_recurring_keeps_due_date(self):
        task = _make_task(kind="wound_care", is_recurring=False)
        _record(task, _day(1), 11, 0)
        task = self._reconcile(task)
        self.assertEqual(task.next_due_at, _at(MONDAY))
        self.assertEqual(task.last_completed_at, _at(_day(1), 11, 0))
        self.assertEqual(task.status(_at(_day(1), 12, 0)), SCHEDULED)

    def test_cutoff_date_leaves_task_unchanged(self):
        _record(self.task, _day(1))
        Task.objects.filter(pk=self.task.pk).update(last_completed_at=_at(MONDAY, 9, 0))
        self.task.refresh_from_db()
        before = (self.task.last_completed_at, self.task.next_due_at, self.task.updated_at)

        Reconciler(cutoff_date=_day(1)).reconcile(self.task)
        self.task.refresh_from_db()

        self.assertEqual(
            (self.task.last_completed_at, self.task.next_due_at, self.task.updated_at),
            before,
        )

    def test_completion_after_cutoff_is_used(self):
        _record(self.task, _day(1))
        task = Reconciler(cutoff_date=MONDAY).reconcile(self.task)
        self.assertEqual(task.last_completed_at, _at(_day(1), 0, 0))

    def test_search_bound(self):
        for offset in range(5):
            _record(self.task, _day(offset))
        with self.assertRaises(ScheduleExhausted):
            Reconciler(cutoff_date=datetime.date(2025, 1, 1), search_limit=3).reconcile(
                self.task,
            )
        self.task.refresh_from_db()
        self.assertEqual(self.task.next_due_at, _at(MONDAY))

    def test_reconcile_task_reads_current_row(self):
        _record(self.task, _day(5))
        _record(self.task, _day(6))
        # Another writer moved the schedule after self.task was loaded.
        Task.objects.filter(pk=self.task.pk).update(next_due_at=_at(_day(5)))
        task = reconcile_task(self.task.pk, reconciler=self.reconciler)
        self.assertEqual(task.next_due_at, _at(_day(7)))


class TaskRecordStoreTests(TestCase):

    def setUp(self):
        self.store = TaskRecordStore()
        self.task = _make_task()

    def test_latest_completion_none(self):
        self.assertIsNone(self.store.find_latest_completion(self.task.pk))

    def test_untimed_record_sorts_after_timed_on_same_day(self):
        _record(self.task, MONDAY, 9, 0)
        _record(self.task, MONDAY)
        self.assertEqual(
            self.store.find_latest_completion(self.task.pk), (MONDAY, datetime.time(9, 0)),
        )

    def test_exists_completion(self):
        _record(self.task, MONDAY)
        self.assertTrue(self.store.exists_completion(self.task.pk, MONDAY))
        self.assertFalse(self.store.exists_completion(self.task.pk, _day(1)))

    def test_stale_update_rejected(self):
        with self.assertRaises(StaleState):
            self.store.update_task_schedule(
                self.task.pk, None, _at(_day(3)), expected_next_due_at=_at(_day(1)),
            )
        self.task.refresh_from_db()
        self.assertEqual(self.task.next_due_at, _at(MONDAY))


class CompletionSignalTests(TestCase):

    def setUp(self):
        today = timezone.localdate()
        self.today = today
        self.task = _make_task(kind="vital_signs", next_due=_at(today), created=today)

    def test_recording_completion_advances_task(self):
        CompletionRecord.objects.create(
            task=self.task, record_date=self.today, record_time=datetime.time(8, 10),
        )
        self.task.refresh_from_db()
        self.assertEqual(self.task.last_completed_at, _at(self.today, 8, 10))
        self.assertEqual(
            self.task.next_due_at, _at(self.today + datetime.timedelta(days=1)),
        )

    def test_deleting_only_completion_resets_task(self):
        record = CompletionRecord.objects.create(task=self.task, record_date=self.today)
        record.delete()
        self.task.refresh_from_db()
        self.assertIsNone(self.task.last_completed_at)
        self.assertEqual(self.task.next_due_at, _at(self.today))

    def test_deleting_task_with_completions(self):
        CompletionRecord.objects.create(task=self.task, record_date=self.today)
        self.task.delete()
        self.assertFalse(CompletionRecord.objects.exists())

    def test_failed_reconciliation_is_logged_not_raised(self):
        with mock.patch("tasks.services.reconcile_task", side_effect=StoreError("down")):
            with self.assertLogs("tasks.signals", level="ERROR"):
                CompletionRecord.objects.create(task=self.task, record_date=self.today)
        self.assertEqual(CompletionRecord.objects.filter(task=self.task).count(), 1)
        self.task.refresh_from_db()
        self.assertEqual(self.task.next_due_at, _at(self.today))


class TasksByStatusTests(TestCase):

    def test_buckets(self):
        now = _at(MONDAY, 10, 0)
        _make_task(next_due=_at(_day(-1)))
        _make_task(next_due=_at(MONDAY, 12, 0))
        _make_task(next_due=_at(_day(1), 9, 0))
        _make_task(next_due=_at(_day(9)))
        _make_task(next_due=_at(_day(-2)), subject_id=2)

        buckets = tasks_by_status(subject_id=1, now=now)
        self.assertEqual(
            {status: len(tasks) for status, tasks in buckets.items()},
            {OVERDUE: 1, PENDING_TODAY: 1, DUE_SOON: 1, SCHEDULED: 1},
        )
        self.assertEqual(len(tasks_by_status(now=now)[OVERDUE]), 2)


class TaskViewTests(TestCase):

    def setUp(self):
        self.user = User.objects.create_user("nurse", password="pw")
        self.client.force_login(self.user)
        self.task = _make_task(next_due=_at(timezone.localdate() - datetime.timedelta(days=2)))

    def test_login_required(self):
        self.client.logout()
        resp = self.client.get(f"/tasks/{self.task.pk}/status/")
        self.assertEqual(resp.status_code, 302)

    def test_status(self):
        resp = self.client.get(f"/tasks/{self.task.pk}/status/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], OVERDUE)
        self.assertEqual(resp.json()["frequency"], "Daily")

    def test_status_unknown_task(self):
        self.assertEqual(self.client.get("/tasks/999/status/").status_code, 404)

    def test_reconcile_requires_post(self):
        resp = self.client.get(f"/tasks/{self.task.pk}/reconcile/")
        self.assertEqual(resp.status_code, 405)

    def test_reconcile_resets_task_without_completions(self):
        resp = self.client.post(f"/tasks/{self.task.pk}/reconcile/")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertIsNone(body["last_completed_at"])
        self.task.refresh_from_db()
        self.assertEqual(self.task.next_due_at, _at(timezone.localdate()))

    def test_board(self):
        _make_task(subject_id=2)
        resp = self.client.get("/tasks/board/", {"subject_id": 1})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["counts"][OVERDUE], 1)
        self.assertEqual(sum(resp.json()["counts"].values()), 1)

    def test_reconcile_task_with_zero_interval(self):
        task = _make_task(kind="wound_care", frequency_value=0, next_due=_at(MONDAY, 10, 0))
        _record(task, MONDAY)
        resp = self.client.post(f"/tasks/{task.pk}/reconcile/")
        self.assertEqual(resp.status_code, 200)
        task.refresh_from_db()
        self.assertEqual(task.next_due_at, _at(_day(1), 10, 0))

    def test_reconcile_reports_scheduling_errors(self):
        with mock.patch("tasks.views.reconcile_task", side_effect=InvalidRule("bad rule")):
            resp = self.client.post(f"/tasks/{self.task.pk}/reconcile/")
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"success": False, "error": "bad rule"})

    def test_board_rejects_bad_subject(self):
        resp = self.client.get("/tasks/board/", {"subject_id": "abc"})
        self.assertEqual(resp.status_code, 400)


class ReconcileTasksCommandTests(TestCase):

    def test_reconciles_all_tasks(self):
        _make_task()
        _make_task(subject_id=2)
        out = StringIO()
        call_command("reconcile_tasks", stdout=out)
        self.assertIn("Reconciled 2 of 2 task(s).", out.getvalue())

    def test_subject_filter(self):
        _make_task()
        _make_task(subject_id=2)
        out = StringIO()
        call_command("reconcile_tasks", "--subject", "2", stdout=out)
        self.assertIn("Reconciled 1 of 1 task(s).", out.getvalue())

    def test_unknown_task(self):
        with self.assertRaises(CommandError):
            call_command("reconcile_tasks", "--task", "999", stdout=StringIO())

    def test_failures_reported(self):
        task = _make_task()
        _record(task, MONDAY)
        out, err = StringIO(), StringIO()
        with self.settings(SCHEDULE_SEARCH_LIMIT=1):
            call_command("reconcile_tasks", stdout=out, stderr=err)
        self.assertIn("Reconciled 0 of 1 task(s).", out.getvalue())
        self.assertIn(f"task {task.pk}", err.getvalue())
