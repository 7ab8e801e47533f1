"""Job engine package."""

from jobq.jobs.errors import (
    DuplicateDedupKeyError,
    InvalidJobError,
    JobNotFoundError,
    LeaseLostError,
    PermanentJobError,
)
from jobq.jobs.models import EnqueueResult, Job, JobStatusView, Outcome
from jobq.jobs.registry import JobRegistry, default_registry
from jobq.jobs.types import CancelResult, JobState, OutcomeKind, Priority

__all__ = [
    "CancelResult",
    "DuplicateDedupKeyError",
    "EnqueueResult",
    "InvalidJobError",
    "Job",
    "JobNotFoundError",
    "JobRegistry",
    "JobState",
    "JobStatusView",
    "LeaseLostError",
    "Outcome",
    "OutcomeKind",
    "PermanentJobError",
    "Priority",
    "default_registry",
]
