"""
Medication workflow views.

JSON endpoints for triggering instance generation and reading overdue
dispensing counts.  All views require authentication.
"""
import datetime

from dateutil.rrule import DAILY, rrule
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET, require_POST

from tasks.exceptions import StoreError

from . import services

# Longest from..to span, in days, the overdue endpoint accepts.
MAX_OVERDUE_SPAN_DAYS = 92


def _parse_date(value, default=None):
    if not value:
        return default
    return datetime.date.fromisoformat(value)


def _parse_subject(value):
    return int(value) if value else None


@login_required
@require_POST
def generate(request):
    """Generate dispensing instances for ``date`` (default today).

    Optional ``until`` extends generation to a date range and ``subject_id``
    limits it to one resident.
    """
    params = request.POST or request.GET
    try:
        target = _parse_date(params.get("date"), timezone.localdate())
        until = _parse_date(params.get("until"))
        subject_id = _parse_subject(params.get("subject_id"))
    except ValueError as exc:
        return JsonResponse({"success": False, "error": str(exc)}, status=400)
    if until is not None and until < target:
        return JsonResponse(
            {"success": False, "error": "until must not be before date"}, status=400,
        )

    try:
        if until is None:
            result = services.generate_instances_for_date(target, subject_id=subject_id)
        else:
            result = services.generate_instances_for_range(
                target, until, subject_id=subject_id,
            )
    except StoreError as exc:
        return JsonResponse({"success": False, "error": str(exc)}, status=500)

    return JsonResponse({
        "success": result.success,
        "date": target.isoformat(),
        "until": until.isoformat() if until else None,
        "created": result.created,
        "pruned": result.pruned,
        "prescriptions_processed": result.prescriptions_processed,
        "errors": [error.as_dict() for error in result.errors],
    })


@login_required
@require_GET
def overdue(request):
    """Overdue dispensing counts per day for ``from``..``to`` (default today)."""
    today = timezone.localdate()
    try:
        start = _parse_date(request.GET.get("from"), today)
        end = _parse_date(request.GET.get("to"), start)
        subject_id = _parse_subject(request.GET.get("subject_id"))
    except ValueError as exc:
        return JsonResponse({"error": str(exc)}, status=400)

    if end < start:
        return JsonResponse({"error": "to must not be before from"}, status=400)
    if (end - start).days >= MAX_OVERDUE_SPAN_DAYS:
        return JsonResponse(
            {"error": f"at most {MAX_OVERDUE_SPAN_DAYS} days can be requested"}, status=400,
        )

    days = [day.date() for day in rrule(DAILY, dtstart=start, until=end)]
    counts = services.overdue_counts_by_date(days, subject_id=subject_id)
    return JsonResponse({
        "counts": {day.isoformat(): count for day, count in counts.items()},
        "total": sum(counts.values()),
    })
