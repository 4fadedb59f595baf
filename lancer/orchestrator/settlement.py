"""Buyer- and agent-facing settlement actions.

These are the transitions the background loops do not drive: invoicing a
job, submitting work, approving or rejecting it, paying out and cancelling.
Paying out always goes through the escrow release path; a job is only
marked paid_out once the chain has confirmed the release.
"""

import logging
from typing import Optional

from lancer.commerce.escrow.service import EscrowService, EscrowServiceError
from lancer.commerce.jobs.models import Delivery, Job, JobStatus
from lancer.commerce.jobs.service import (
    InvalidTransitionError,
    JobService,
    JobServiceError,
    StateConflictError,
    UnauthorizedError,
)
from lancer.protocols import Invoice, PaymentProvider

logger = logging.getLogger(__name__)


class SettlementService:
    """Invoice, delivery, approval and payout operations on a job."""

    def __init__(
        self,
        job_service: JobService,
        escrow: Optional[EscrowService] = None,
        provider: Optional[PaymentProvider] = None,
    ):
        self.job_service = job_service
        self.escrow = escrow
        self.provider = provider

    def _require_escrow(self) -> EscrowService:
        if self.escrow is None:
            raise EscrowServiceError("Escrow is not configured")
        return self.escrow

    @staticmethod
    def _require_buyer(job: Job, buyer_id: int):
        if job.buyer_id != buyer_id:
            raise UnauthorizedError(f"User {buyer_id} is not the buyer of job {job.id}")

    async def hire(self, job_id: int) -> Invoice:
        """Issue a provider invoice for an unpaid job and attach it."""
        if self.provider is None:
            raise JobServiceError("Payment provider is not configured")
        job = self.job_service.get_job(job_id)
        if job.job_status != JobStatus.UNPAID:
            raise StateConflictError(job_id, JobStatus.UNPAID.value, job.status, "invoice")
        if job.invoice_id:
            logger.info(f"Job {job_id} already has invoice {job.invoice_id}, issuing a new one")

        invoice = await self.provider.create_invoice(
            job.amount_usdc, job.reference_key, description=job.title
        )
        self.job_service.attach_invoice(job_id, invoice.invoice_id)
        logger.info(f"Job {job_id} invoiced: {invoice.invoice_id} ({job.amount_usdc} USDC)")
        return invoice

    def submit_delivery(
        self,
        job_id: int,
        content: str,
        delivery_type: str = "text",
        external_url: Optional[str] = None,
        notes: Optional[str] = None,
        actor: str = "agent",
    ) -> Delivery:
        """Record work for a job, starting it first if it is only escrowed."""
        if not content or not content.strip():
            raise JobServiceError("Delivery content is required")
        job = self.job_service.get_job(job_id)
        if job.job_status == JobStatus.ESCROWED:
            self.job_service.start_work(job_id, actor=actor)
        return self.job_service.mark_delivered(
            job_id,
            Delivery(
                job_id=job_id,
                content=content,
                delivery_type=delivery_type,
                external_url=external_url,
                notes=notes,
            ),
            actor=actor,
        )

    async def approve_delivery(self, job_id: int, buyer_id: int) -> Job:
        """Buyer accepts the delivery: delivered -> completed, then pay out.

        If the release fails the job stays completed and ``release_payout``
        can be called again.
        """
        job = self.job_service.get_job(job_id)
        self._require_buyer(job, buyer_id)
        completed = self.job_service.complete(job_id, actor=f"buyer:{buyer_id}")
        try:
            return await self.release_payout(job_id)
        except EscrowServiceError as e:
            logger.error(f"Job {job_id} approved but payout failed: {e}")
            return completed

    async def release_payout(self, job_id: int) -> Job:
        """completed -> paid_out via the escrow release."""
        escrow = self._require_escrow()
        job = self.job_service.get_job(job_id)
        if job.job_status != JobStatus.COMPLETED:
            raise StateConflictError(
                job_id, JobStatus.COMPLETED.value, job.status, JobStatus.PAID_OUT.value
            )
        if not job.escrow_object_id:
            raise EscrowServiceError(f"Job {job_id} has no escrow to release")

        result = await escrow.release_escrow(job.escrow_object_id)
        if not result.success:
            raise EscrowServiceError(
                f"Release of escrow {job.escrow_object_id} failed "
                f"({result.failure.value if result.failure else 'unknown'}): {result.error}"
            )
        return self.job_service.mark_paid_out(job_id, result.tx_digest)

    def reject_delivery(self, job_id: int, buyer_id: int, reason: str) -> Job:
        """Buyer disputes the delivery."""
        job = self.job_service.get_job(job_id)
        self._require_buyer(job, buyer_id)
        return self.job_service.dispute(
            job_id, reason, actor=f"buyer:{buyer_id}", from_status=JobStatus.DELIVERED
        )

    async def cancel_job(self, job_id: int, reason: Optional[str] = None) -> Job:
        """Cancel before work starts, refunding the escrow if there is one.

        An escrowed job is moved to cancelled before the refund is submitted,
        so work cannot start on it meanwhile. A failed refund leaves the job
        cancelled and flagged for review.
        """
        job = self.job_service.get_job(job_id)
        status = job.job_status
        if status == JobStatus.UNPAID:
            return self.job_service.cancel(job_id, reason=reason, from_status=status)
        if status != JobStatus.ESCROWED:
            raise InvalidTransitionError(job_id, job.status, JobStatus.CANCELLED.value)

        escrow = self._require_escrow()
        cancelled = self.job_service.cancel(job_id, reason=reason, from_status=status)
        result = await escrow.cancel_escrow(job.escrow_object_id)
        if not result.success:
            note = (
                f"Cancelled but refund of escrow {job.escrow_object_id} failed "
                f"({result.failure.value if result.failure else 'unknown'}): {result.error}"
            )
            self.job_service.flag_for_review(job_id, note)
            raise EscrowServiceError(note)
        logger.info(f"Escrow {job.escrow_object_id} refunded ({result.tx_digest})")
        return cancelled
