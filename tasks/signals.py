import logging

from django.db import DatabaseError
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .exceptions import SchedulingError
from .models import CompletionRecord, Task

logger = logging.getLogger(__name__)


def _reconcile_quietly(task_id):
    """Run the reconciler for *task_id*, logging instead of raising.

    A failed reconciliation must not undo the completion record change that
    triggered it; the previous schedule stands until the next success.
    """
    # Import here to avoid circular import (services imports models).
    from .services import reconcile_task

    try:
        reconcile_task(task_id)
    except Task.DoesNotExist:
        logger.debug("Task %s no longer exists; nothing to reconcile.", task_id)
    except (SchedulingError, DatabaseError):
        logger.exception("Reconciliation of task %s failed.", task_id)


@receiver(post_save, sender=CompletionRecord)
def on_completion_save(sender, instance, **kwargs):
    """Advance the task schedule when a completion is recorded or edited."""
    _reconcile_quietly(instance.task_id)


@receiver(post_delete, sender=CompletionRecord)
def on_completion_delete(sender, instance, origin=None, **kwargs):
    """Re-derive the task schedule when a completion is removed."""
    if isinstance(origin, Task):
        # The whole task is being deleted.
        return
    _reconcile_quietly(instance.task_id)
