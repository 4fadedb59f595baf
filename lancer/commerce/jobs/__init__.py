"""Jobs subsystem for lancer.

Models:
- Job: A unit of paid work
- JobStatus: Job lifecycle status
- JobStateTransition: Audit log entry for status changes
- UserRequest, Worker, User, Delivery

Service:
- JobService: The job status state machine
"""

from lancer.commerce.jobs.models import (
    VALID_JOB_TRANSITIONS,
    Delivery,
    Job,
    JobStateTransition,
    JobStatus,
    RequestStatus,
    User,
    UserRequest,
    Worker,
)
from lancer.commerce.jobs.service import (
    InvalidTransitionError,
    JobNotFoundError,
    JobService,
    JobServiceError,
    StateConflictError,
    UnauthorizedError,
)

__all__ = [
    # Models
    "Job",
    "JobStatus",
    "JobStateTransition",
    "RequestStatus",
    "UserRequest",
    "User",
    "Worker",
    "Delivery",
    "VALID_JOB_TRANSITIONS",
    # Service
    "JobService",
    "JobServiceError",
    "JobNotFoundError",
    "StateConflictError",
    "InvalidTransitionError",
    "UnauthorizedError",
]
