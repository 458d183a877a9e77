"""Background workers: tenant loops, submission, polling and reconciliation."""

from genpool.workers.completion_poller import CompletionPoller
from genpool.workers.reconciliation_worker import run_reconciliation_worker
from genpool.workers.submission import PreAssigned, Rotate, SubmissionEngine, SubmissionOutcome
from genpool.workers.task_registry import TaskRegistry
from genpool.workers.tenant_queue import TenantQueueManager

__all__ = [
    "CompletionPoller",
    "PreAssigned",
    "Rotate",
    "SubmissionEngine",
    "SubmissionOutcome",
    "TaskRegistry",
    "TenantQueueManager",
    "run_reconciliation_worker",
]
