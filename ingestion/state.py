"""
Job status state machine.
"""

from typing import Dict, FrozenSet

from core.exceptions import InvalidTransitionError
from models.base import JobStatus, JobType

TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED
})

# EXTRACTING -> EXTRACTING and LOADING -> LOADING restart a phase on redelivery
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({
        JobStatus.EXTRACTING, JobStatus.LOADING, JobStatus.FAILED, JobStatus.CANCELLED
    }),
    JobStatus.EXTRACTING: frozenset({
        JobStatus.EXTRACTING, JobStatus.DATA_READY, JobStatus.FAILED, JobStatus.CANCELLED
    }),
    JobStatus.DATA_READY: frozenset({
        JobStatus.LOADING, JobStatus.FAILED, JobStatus.CANCELLED
    }),
    JobStatus.LOADING: frozenset({
        JobStatus.LOADING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: JobStatus) -> FrozenSet[JobStatus]:
    """Statuses from which ``target`` may be entered (used for compare-and-set updates)."""
    return frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def ensure_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Job {job_id} cannot move from {current.value} to {target.value}",
            context={"job_id": job_id, "from": current.value, "to": target.value}
        )


def is_finished(job_type: JobType, status: JobStatus) -> bool:
    """True once a job of this type has nothing left to do."""
    if status in TERMINAL_STATUSES:
        return True
    return job_type == JobType.EXTRACTION and status == JobStatus.DATA_READY
