"""Request reconciliation: pending user requests -> unpaid jobs.

Each tick reads a small batch of pending requests, oldest first, and for
each one classifies the text, picks a worker and creates the job. The job
insert and the request's move to ``processed`` share one transaction, and
the request update only matches while it is still pending, so a request
yields at most one job.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from lancer.commerce.jobs.models import MAX_TITLE_LENGTH, Job, UserRequest, Worker
from lancer.intent.classifier import IntentClassifierAdapter
from lancer.orchestrator.loop import Reconciler, TickReport
from lancer.storage.sqlite import SQLiteLedger

logger = logging.getLogger(__name__)


def clamp_amount(amount: Decimal, limits: Tuple[Decimal, Decimal]) -> Decimal:
    low, high = limits
    return min(max(amount, low), high)


class RequestReconciler(Reconciler):
    """Turns pending UserRequests into unpaid Jobs."""

    name = "request-reconciler"

    def __init__(
        self,
        ledger: SQLiteLedger,
        classifier: IntentClassifierAdapter,
        batch_size: int = 5,
        amount_limits: Optional[Tuple[Decimal, Decimal]] = None,
    ):
        super().__init__(batch_size)
        self.ledger = ledger
        self.classifier = classifier
        self.amount_limits = amount_limits

    def match_worker(self, skills: List[str]) -> Optional[Worker]:
        """Best available worker for the ranked skills.

        Tries each skill in order, then the highest-rated available worker
        of any skill. None when nobody is available.
        """
        for skill in skills:
            candidates = self.ledger.find_workers_by_skill(skill)
            if candidates:
                return candidates[0]
        available = self.ledger.list_available_workers()
        if available:
            logger.debug(f"No worker for skills {skills}, falling back to {available[0].user_id}")
            return available[0]
        return None

    async def _tick(self, report: TickReport):
        requests = self.ledger.list_pending_requests(self.batch_size)
        if not requests:
            return
        logger.debug(f"[{self.name}] {len(requests)} pending requests")
        limits = self.amount_limits or self.ledger.get_amount_limits()
        for request in requests:
            await self._process(request, limits, report)

    async def _process(
        self, request: UserRequest, limits: Tuple[Decimal, Decimal], report: TickReport
    ):
        try:
            intent = await self.classifier.classify(request.description)
            worker = self.match_worker(intent.skills)
            job = Job(
                id=None,
                title=intent.summary[:MAX_TITLE_LENGTH],
                buyer_id=request.user_id,
                amount_usdc=clamp_amount(intent.estimated_budget, limits),
                requirements=request.description,
                worker_id=worker.user_id if worker else None,
            )
            created = self.ledger.create_job_for_request(request.id, job)
        except Exception as e:
            logger.warning(f"[{self.name}] request {request.id} failed: {e}")
            self.ledger.fail_request(request.id, f"Processing failed: {e}")
            report.failed += 1
            return

        if created is None:
            logger.info(f"[{self.name}] request {request.id} no longer pending, skipped")
            report.skipped += 1
            return
        logger.info(
            f"[{self.name}] request {request.id} -> job {created.id} "
            f"'{created.title}' ({created.amount_usdc} USDC, worker {created.worker_id})"
        )
        report.processed += 1
