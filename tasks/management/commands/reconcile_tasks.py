from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from tasks.exceptions import SchedulingError
from tasks.models import Task
from tasks.services import Reconciler, reconcile_task


class Command(BaseCommand):
    help = (
        "Re-derive task schedules from recorded completions.\n\n"
        "Normally this happens automatically whenever a completion record is "
        "saved or deleted; run it after bulk imports or manual database edits."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--task",
            type=int,
            action="append",
            dest="task_ids",
            default=None,
            help="Task id to reconcile (repeatable). Defaults to all tasks.",
        )
        parser.add_argument(
            "--subject",
            type=int,
            default=None,
            help="Only reconcile tasks of this resident.",
        )

    def handle(self, *args, **options):
        tasks = Task.objects.order_by("pk")
        if options["task_ids"]:
            tasks = tasks.filter(pk__in=options["task_ids"])
        if options["subject"] is not None:
            tasks = tasks.filter(subject_id=options["subject"])

        task_ids = list(tasks.values_list("pk", flat=True))
        if options["task_ids"] and not task_ids:
            raise CommandError("No matching tasks.")

        reconciler = Reconciler()
        failures = 0
        for task_id in task_ids:
            try:
                task = reconcile_task(task_id, reconciler=reconciler)
            except SchedulingError as exc:
                failures += 1
                self.stderr.write(f"  ! task {task_id}: {exc}")
                continue
            next_due = timezone.localtime(task.next_due_at)
            self.stdout.write(f"  {task_id}: next due {next_due:%Y-%m-%d %H:%M}")

        summary = f"Reconciled {len(task_ids) - failures} of {len(task_ids)} task(s)."
        if failures:
            self.stdout.write(self.style.WARNING(summary))
        else:
            self.stdout.write(self.style.SUCCESS(summary))
