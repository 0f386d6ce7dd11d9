"""
Task schedule views.

JSON endpoints used by the ward dashboard; all require authentication.
"""
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.views.decorators.http import require_GET, require_POST

from .exceptions import SchedulingError, StaleState
from .models import Task
from .services import reconcile_task, tasks_by_status


def _task_payload(task, now):
    return {
        "id": task.pk,
        "subject_id": task.subject_id,
        "kind": task.kind,
        "frequency": task.describe_frequency(),
        "last_completed_at": task.last_completed_at.isoformat() if task.last_completed_at else None,
        "next_due_at": task.next_due_at.isoformat(),
        "status": task.status(now),
    }


@login_required
@require_GET
def task_status(request, task_id):
    task = get_object_or_404(Task, pk=task_id)
    return JsonResponse(_task_payload(task, timezone.now()))


@login_required
@require_POST
def task_reconcile(request, task_id):
    get_object_or_404(Task, pk=task_id)
    try:
        task = reconcile_task(task_id)
    except StaleState as exc:
        return JsonResponse({"success": False, "error": str(exc)}, status=409)
    except SchedulingError as exc:
        return JsonResponse({"success": False, "error": str(exc)}, status=500)
    payload = _task_payload(task, timezone.now())
    payload["success"] = True
    return JsonResponse(payload)


@login_required
@require_GET
def status_board(request):
    """Tasks grouped by status, optionally for one resident."""
    subject_id = request.GET.get("subject_id") or None
    if subject_id is not None:
        try:
            subject_id = int(subject_id)
        except ValueError:
            return JsonResponse({"error": "subject_id must be an integer"}, status=400)

    now = timezone.now()
    buckets = tasks_by_status(subject_id=subject_id, now=now)
    return JsonResponse({
        "generated_at": now.isoformat(),
        "counts": {status: len(tasks) for status, tasks in buckets.items()},
        "tasks": {
            status: [_task_payload(task, now) for task in tasks]
            for status, tasks in buckets.items()
        },
    })
