"""Payment reconciliation: invoice status -> escrow -> agent dispatch.

Each tick polls the payment provider for every unpaid job that has an
invoice (oldest first, up to ``batch_size``):

- paid: lock the amount in escrow, move the job to escrowed and, with
  auto-dispatch on, to working; the agent's output becomes a delivery
- expired / cancelled: cancel the job, no escrow
- pending: nothing

A failing job is left as it was apart from its attempt counter. Once the
counter reaches ``max_retries`` (or immediately, for failures retrying
cannot fix) the escalation policy takes over.
"""

import logging
from typing import Optional, Protocol

from lancer.agents.executor import infer_task_type
from lancer.commerce.escrow.service import EscrowFailure, EscrowResult, EscrowService
from lancer.commerce.jobs.models import Delivery, Job, JobStatus, Worker
from lancer.commerce.jobs.service import JobService, StateConflictError
from lancer.orchestrator.loop import Reconciler, TickReport
from lancer.protocols import (
    AgentExecutor,
    AgentExecutorError,
    InvoiceStatus,
    LancerError,
    PaymentProvider,
)
from lancer.storage.sqlite import SQLiteLedger

logger = logging.getLogger(__name__)


class EscrowCreationFailed(LancerError):
    """Escrow could not be created for a paid job."""

    def __init__(self, job: Job, result: EscrowResult):
        self.job_id = job.id
        self.failure = result.failure or EscrowFailure.CHAIN_ERROR
        super().__init__(f"Escrow for job {job.id} failed ({self.failure.value}): {result.error}")

    @property
    def retryable(self) -> bool:
        return self.failure.retryable


class EscalationPolicy(Protocol):
    def escalate(self, job: Job, reason: str, attempts: int) -> None: ...


class FlagForReview:
    """Mark the job for manual review; flagged jobs are no longer polled."""

    def __init__(self, ledger: SQLiteLedger):
        self.ledger = ledger

    def escalate(self, job: Job, reason: str, attempts: int) -> None:
        note = f"Payment processing failed after {attempts} attempt(s): {reason}"
        self.ledger.flag_for_review(job.id, note[:500])
        logger.error(f"Job {job.id} ({job.reference_key}) flagged for review: {reason}")


class PaymentReconciler(Reconciler):
    """Advances unpaid jobs according to their invoice status."""

    name = "payment-reconciler"

    def __init__(
        self,
        ledger: SQLiteLedger,
        job_service: JobService,
        provider: PaymentProvider,
        escrow: EscrowService,
        executor: Optional[AgentExecutor] = None,
        batch_size: int = 5,
        auto_trigger_agent: bool = True,
        max_retries: int = 3,
        escalation: Optional[EscalationPolicy] = None,
    ):
        super().__init__(batch_size)
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.ledger = ledger
        self.job_service = job_service
        self.provider = provider
        self.escrow = escrow
        self.executor = executor
        self.auto_trigger_agent = auto_trigger_agent
        self.max_retries = max_retries
        self.escalation = escalation or FlagForReview(ledger)

    async def _tick(self, report: TickReport):
        jobs = self.ledger.list_unpaid_jobs_with_invoices(self.batch_size)
        if not jobs:
            return
        logger.debug(f"[{self.name}] checking {len(jobs)} invoices")
        for job in jobs:
            try:
                advanced = await self._process(job)
            except StateConflictError as e:
                logger.warning(f"[{self.name}] job {job.id} changed underneath us: {e}")
                report.skipped += 1
            except Exception as e:
                report.failed += 1
                if self._record_failure(job, e):
                    report.escalated += 1
            else:
                if advanced:
                    report.processed += 1
                else:
                    report.skipped += 1

    async def _process(self, job: Job) -> bool:
        """Handle one job. Returns False when the invoice is still pending."""
        status = await self.provider.get_invoice_status(job.invoice_id)
        if status == InvoiceStatus.PENDING:
            return False
        if status in (InvoiceStatus.EXPIRED, InvoiceStatus.CANCELLED):
            self.job_service.cancel(
                job.id,
                reason=f"Invoice {job.invoice_id} {status.value}",
                from_status=JobStatus.UNPAID,
            )
            logger.info(f"[{self.name}] job {job.id} cancelled: invoice {status.value}")
            return True

        logger.info(f"[{self.name}] invoice {job.invoice_id} paid for job {job.id}")
        worker = self.ledger.get_worker_by_user(job.worker_id) if job.worker_id else None
        job = await self._escrow(job, worker)
        if self.auto_trigger_agent:
            try:
                await self._dispatch(job, worker)
            except LancerError as e:
                # Escrow is already recorded; the job is not retried as a payment
                logger.error(f"[{self.name}] dispatch of job {job.id} failed: {e}")
        return True

    async def _escrow(self, job: Job, worker: Optional[Worker]) -> Job:
        buyer = self.ledger.get_user(job.buyer_id)
        result = await self.escrow.create_escrow(
            buyer.wallet_address if buyer else None,
            worker.wallet_address if worker else None,
            job.amount_usdc,
            job.reference_key,
        )
        if not result.success:
            raise EscrowCreationFailed(job, result)
        try:
            return self.job_service.mark_escrowed(
                job.id, result.escrow_object_id, result.tx_digest
            )
        except StateConflictError:
            if not result.existing:
                await self._unwind_escrow(job, result)
            raise
        finally:
            self.escrow.forget(job.reference_key)

    async def _unwind_escrow(self, job: Job, result: EscrowResult):
        """Funds were locked for a job that moved on while the chain call was in flight."""
        current = self.ledger.get_job(job.id) or job
        if current.job_status == JobStatus.CANCELLED:
            refund = await self.escrow.cancel_escrow(result.escrow_object_id)
            if refund.success:
                logger.warning(
                    f"[{self.name}] job {job.id} was cancelled during escrow creation; "
                    f"escrow {result.escrow_object_id} refunded ({refund.tx_digest})"
                )
                return
            reason = (
                f"Escrow {result.escrow_object_id} locked for cancelled job and refund "
                f"failed: {refund.error}"
            )
        else:
            reason = (
                f"Escrow {result.escrow_object_id} locked but job is {current.status}; "
                f"ledger does not record it"
            )
        logger.error(f"[{self.name}] job {job.id}: {reason}")
        self.escalation.escalate(current, reason, current.payment_attempts)

    async def _dispatch(self, job: Job, worker: Optional[Worker]):
        """escrowed -> working, then run the agent. Failures leave the job working."""
        if self.executor is None:
            logger.warning(
                f"[{self.name}] no agent executor configured, job {job.id} stays escrowed"
            )
            return
        job = self.job_service.start_work(job.id)
        task_type = infer_task_type(job.title, job.requirements)
        try:
            result = await self.executor.execute(
                job.id,
                job.title,
                job.requirements,
                task_type,
                endpoint=worker.mcp_endpoint if worker else None,
            )
        except AgentExecutorError as e:
            logger.error(f"[{self.name}] agent execution for job {job.id} failed: {e}")
            return

        if not result.success:
            logger.error(f"[{self.name}] agent could not complete job {job.id}: {result.error}")
            return
        delivery = self.job_service.mark_delivered(
            job.id,
            Delivery(job_id=job.id, content=result.content or "", delivery_type=result.delivery_type),
            actor=f"agent:{job.worker_id}",
        )
        logger.info(f"[{self.name}] job {job.id} delivered (v{delivery.version})")

    def _record_failure(self, job: Job, error: Exception) -> bool:
        """Count a failed attempt; returns True if the job was escalated."""
        retryable = not isinstance(error, EscrowCreationFailed) or error.retryable
        attempts = self.ledger.record_payment_failure(job.id)
        logger.warning(
            f"[{self.name}] job {job.id} attempt {attempts}/{self.max_retries} failed: {error}"
        )
        if retryable and attempts < self.max_retries:
            return False
        self.escalation.escalate(job, str(error), attempts)
        return True
