import datetime

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from medications.services import generate_instances_for_date, generate_instances_for_range


class Command(BaseCommand):
    help = (
        "Generate the day's medication dispensing instances from prescriptions "
        "and prune instances that fall outside edited prescription windows.\n\n"
        "Idempotent; safe to re-run.  Production cron example (daily at 00:05):\n"
        "  5 0 * * * cd /path/to/carehome && .venv/bin/python manage.py build_today"
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--date",
            type=datetime.date.fromisoformat,
            default=None,
            help="Target date (YYYY-MM-DD). Defaults to today.",
        )
        parser.add_argument(
            "--until",
            type=datetime.date.fromisoformat,
            default=None,
            help="Also generate every day up to this date (inclusive).",
        )
        parser.add_argument(
            "--subject",
            type=int,
            default=None,
            help="Only generate for this resident.",
        )

    def handle(self, *args, **options):
        target = options["date"] or timezone.localdate()
        until = options["until"]
        subject_id = options["subject"]

        if until is None:
            result = generate_instances_for_date(target, subject_id=subject_id)
            span = f"{target}"
        else:
            if until < target:
                raise CommandError("--until must not be before --date.")
            result = generate_instances_for_range(target, until, subject_id=subject_id)
            span = f"{target} to {until}"

        self.stdout.write(
            f"Generated {result.created} dispensing instance(s) for {span} "
            f"from {result.prescriptions_processed} prescription check(s)."
        )
        self.stdout.write(f"Pruned {result.pruned} instance(s) outside prescription windows.")
        for error in result.errors:
            self.stderr.write(
                f"  ! prescription {error.prescription_id} "
                f"{error.scheduled_date} {error.scheduled_time}: {error.message}"
            )

        if result.errors:
            self.stdout.write(self.style.WARNING(f"Done with {len(result.errors)} error(s)."))
        else:
            self.stdout.write(self.style.SUCCESS("Done."))
