"""
Taskdesk - Scheduled jobs.

Recurring task materialization, approval escalation and notification
digests. Every job is an ordinary consumer of the query builder.
"""

from taskdesk.scheduler.runner import SchedulerSummary, run_schedulers

__all__ = ["SchedulerSummary", "run_schedulers"]
