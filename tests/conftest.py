"""
Pytest fixtures for lancer tests.
"""

from decimal import Decimal
from typing import List, Optional

import pytest

from lancer.commerce.escrow.service import EscrowService
from lancer.commerce.jobs.models import Job, Worker
from lancer.commerce.jobs.service import JobService
from lancer.storage.sqlite import SQLiteLedger
from tests.fakes import BUYER_WALLET, FakeChainClient, FakeExecutor, FakePaymentProvider, wallet


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ledger(tmp_path):
    """Fresh SQLite ledger per test."""
    return SQLiteLedger(tmp_path / "lancer.db")


@pytest.fixture
def job_service(ledger):
    return JobService(ledger)


@pytest.fixture
def buyer(ledger):
    return ledger.create_user(BUYER_WALLET, role="buyer", display_name="Buyer")


@pytest.fixture
def make_worker(ledger):
    """Factory: register an agent with the given skills."""
    counter = {"n": 100}

    def _make(
        skills: List[str],
        rating: float = 4.0,
        is_available: bool = True,
        mcp_endpoint: Optional[str] = None,
    ) -> Worker:
        counter["n"] += 1
        return ledger.register_worker(
            wallet(counter["n"]),
            skills,
            rating=rating,
            is_available=is_available,
            mcp_endpoint=mcp_endpoint,
        )

    return _make


@pytest.fixture
def make_job(ledger, buyer):
    """Factory: create an unpaid job for the test buyer."""

    def _make(
        title: str = "Test Job",
        amount: str = "100",
        worker: Optional[Worker] = None,
        invoice_id: Optional[str] = None,
    ) -> Job:
        job = ledger.create_job(
            Job(
                id=None,
                title=title,
                buyer_id=buyer.id,
                amount_usdc=Decimal(amount),
                requirements=f"Requirements for {title}",
                worker_id=worker.user_id if worker else None,
            )
        )
        if invoice_id:
            ledger.attach_invoice(job.id, invoice_id)
            job = ledger.get_job(job.id)
        return job

    return _make


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def escrow(chain, ledger):
    return EscrowService(chain, ledger)


@pytest.fixture
def executor():
    return FakeExecutor()
