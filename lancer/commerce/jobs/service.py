"""
Job service: the job status state machine.

Every status change in lancer goes through one of the transition methods
below. Each method checks the transition table first and then performs a
compare-and-set on the ledger, so a caller acting on a stale read gets a
StateConflictError instead of silently overwriting a newer status.

Authorization (e.g. only the buyer may approve a delivery) is the caller's
job; see lancer.orchestrator.settlement.
"""

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from lancer.commerce.jobs.models import (
    Delivery,
    Job,
    JobStateTransition,
    JobStatus,
    is_valid_transition,
)
from lancer.protocols import LancerError

if TYPE_CHECKING:
    from lancer.storage.sqlite import SQLiteLedger

logger = logging.getLogger(__name__)


class JobServiceError(LancerError):
    """Base error for job service operations."""

    pass


class JobNotFoundError(JobServiceError):
    """Job does not exist."""

    pass


class StateConflictError(JobServiceError):
    """The job is not in the status the transition requires.

    Never retried automatically: the record has moved on, the caller must
    re-read it.
    """

    def __init__(self, job_id: int, expected: str, actual: Optional[str], target: str):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        self.target = target
        super().__init__(
            f"Job {job_id}: cannot move to '{target}', expected status '{expected}' "
            f"but found '{actual}'"
        )


class InvalidTransitionError(StateConflictError):
    """The requested transition is not in the transition table."""

    def __init__(self, job_id: int, from_status: str, to_status: str):
        self.job_id = job_id
        self.expected = from_status
        self.actual = from_status
        self.target = to_status
        JobServiceError.__init__(
            self, f"Job {job_id}: transition '{from_status}' -> '{to_status}' is not allowed"
        )


class UnauthorizedError(JobServiceError):
    """Actor is not allowed to perform this action on the job."""

    pass


class JobService:
    """Creates jobs and drives them through the status table."""

    def __init__(self, ledger: "SQLiteLedger"):
        self.ledger = ledger

    # === Lookups ===

    def get_job(self, job_id: int) -> Job:
        job = self.ledger.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def get_transitions(self, job_id: int) -> List[JobStateTransition]:
        return self.ledger.get_transitions(job_id)

    # === Creation ===

    def create_job(
        self,
        title: str,
        buyer_id: int,
        amount_usdc: Decimal,
        requirements: Optional[str] = None,
        worker_id: Optional[int] = None,
    ) -> Job:
        """Create an unpaid job directly (buyer action)."""
        job = Job(
            id=None,
            title=title,
            buyer_id=buyer_id,
            amount_usdc=amount_usdc,
            requirements=requirements,
            worker_id=worker_id,
        )
        created = self.ledger.create_job(job, actor=f"buyer:{buyer_id}")
        logger.info(f"Created job {created.id} ({created.reference_key}) for buyer {buyer_id}")
        return created

    def attach_invoice(self, job_id: int, invoice_id: str) -> Job:
        """Record the provider invoice the payment loop should poll."""
        if not self.ledger.attach_invoice(job_id, invoice_id):
            job = self.get_job(job_id)
            raise StateConflictError(job_id, JobStatus.UNPAID.value, job.status, "invoice")
        return self.get_job(job_id)

    def flag_for_review(self, job_id: int, note: str) -> Job:
        if not self.ledger.flag_for_review(job_id, note):
            raise JobNotFoundError(f"Job {job_id} not found")
        logger.warning(f"Job {job_id} flagged for review: {note}")
        return self.get_job(job_id)

    # === Transitions ===

    def _transition(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        fields: Optional[dict] = None,
        actor: str = "system",
        note: Optional[str] = None,
    ) -> Job:
        if not is_valid_transition(from_status.value, to_status.value):
            raise InvalidTransitionError(job_id, from_status.value, to_status.value)
        if not self.ledger.transition_job(job_id, from_status, to_status, fields, actor, note):
            self._raise_conflict(job_id, from_status, to_status)
        logger.info(f"Job {job_id}: {from_status.value} -> {to_status.value} ({actor})")
        return self.get_job(job_id)

    def _raise_conflict(self, job_id: int, from_status: JobStatus, to_status: JobStatus):
        current = self.ledger.get_job(job_id)
        if current is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        logger.warning(
            f"Job {job_id}: state conflict moving to {to_status.value} "
            f"(expected {from_status.value}, found {current.status})"
        )
        raise StateConflictError(job_id, from_status.value, current.status, to_status.value)

    def mark_escrowed(self, job_id: int, escrow_object_id: str, escrow_tx_digest: str) -> Job:
        """unpaid -> escrowed, recording the on-chain escrow references."""
        if not escrow_object_id or not escrow_tx_digest:
            raise JobServiceError("Escrow object id and transaction digest are required")
        return self._transition(
            job_id,
            JobStatus.UNPAID,
            JobStatus.ESCROWED,
            fields={"escrow_object_id": escrow_object_id, "escrow_tx_digest": escrow_tx_digest},
            actor="payment-reconciler",
        )

    def start_work(self, job_id: int, actor: str = "payment-reconciler") -> Job:
        """escrowed -> working."""
        return self._transition(job_id, JobStatus.ESCROWED, JobStatus.WORKING, actor=actor)

    def mark_delivered(self, job_id: int, delivery: Delivery, actor: str = "agent") -> Delivery:
        """working -> delivered, storing the delivery in the same transaction."""
        if not is_valid_transition(JobStatus.WORKING.value, JobStatus.DELIVERED.value):
            raise InvalidTransitionError(job_id, JobStatus.WORKING.value, JobStatus.DELIVERED.value)
        delivery.job_id = job_id
        stored = self.ledger.deliver_job(job_id, delivery, actor=actor)
        if stored is None:
            self._raise_conflict(job_id, JobStatus.WORKING, JobStatus.DELIVERED)
        logger.info(f"Job {job_id}: working -> delivered (delivery v{stored.version})")
        return stored

    def complete(self, job_id: int, actor: str = "buyer") -> Job:
        """delivered -> completed. Callers must have checked the buyer."""
        return self._transition(job_id, JobStatus.DELIVERED, JobStatus.COMPLETED, actor=actor)

    def mark_paid_out(self, job_id: int, release_tx_digest: str) -> Job:
        """completed -> paid_out, writing the release digest with the status."""
        if not release_tx_digest:
            raise JobServiceError("Release transaction digest is required")
        job = self.get_job(job_id)
        if not self.ledger.pay_out_job(job_id, release_tx_digest, job.worker_id):
            self._raise_conflict(job_id, JobStatus.COMPLETED, JobStatus.PAID_OUT)
        logger.info(f"Job {job_id}: completed -> paid_out ({release_tx_digest})")
        return self.get_job(job_id)

    def cancel(
        self, job_id: int, reason: Optional[str] = None, from_status: Optional[JobStatus] = None
    ) -> Job:
        """unpaid|escrowed -> cancelled.

        ``from_status`` defaults to the job's current status; the update still
        only applies if the job is in that status when it is written.
        """
        source = JobStatus(from_status) if from_status else self.get_job(job_id).job_status
        return self._transition(job_id, source, JobStatus.CANCELLED, actor="system", note=reason)

    def dispute(
        self,
        job_id: int,
        reason: str,
        actor: str = "buyer",
        from_status: Optional[JobStatus] = None,
    ) -> Job:
        """working|delivered -> disputed."""
        source = JobStatus(from_status) if from_status else self.get_job(job_id).job_status
        return self._transition(job_id, source, JobStatus.DISPUTED, actor=actor, note=reason)
