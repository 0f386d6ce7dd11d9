"""Errors raised by the scheduling engine."""


class SchedulingError(Exception):
    """Base class for scheduling failures."""


class InvalidRule(SchedulingError, ValueError):
    """A recurrence rule or time-of-day value that cannot be interpreted."""


class ScheduleExhausted(SchedulingError):
    """The forward search ran past its iteration bound."""

    def __init__(self, task_id, start_day, limit):
        self.task_id = task_id
        self.start_day = start_day
        self.limit = limit
        super().__init__(
            f"No open occurrence for task {task_id} within {limit} steps "
            f"of {start_day}"
        )


class StoreError(SchedulingError):
    """The record store failed to read or write."""


class StaleState(SchedulingError):
    """The task schedule changed while it was being reconciled."""
