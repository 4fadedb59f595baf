"""Tests for escrow orchestration.

The chain is a FakeChainClient (see tests/fakes.py); these tests cover the
idempotency guarantees and failure mapping, not Sui itself.
"""

import asyncio
from decimal import Decimal

import pytest

from lancer.commerce.escrow.service import (
    EscrowFailure,
    EscrowResult,
    EscrowService,
    EscrowServiceError,
    classify_chain_error,
)
from lancer.protocols import (
    ChainClientError,
    ChainReceipt,
    ChainTimeoutError,
    InsufficientFundsError,
    InvalidAddressError,
)
from tests.fakes import BUYER_WALLET, FakeChainClient, wallet

WORKER_WALLET = wallet(1)


class TestFailureClassification:
    @pytest.mark.parametrize(
        "error,failure",
        [
            (InsufficientFundsError("low"), EscrowFailure.INSUFFICIENT_FUNDS),
            (InvalidAddressError("bad"), EscrowFailure.INVALID_ADDRESS),
            (ChainTimeoutError("slow"), EscrowFailure.TIMEOUT),
            (ChainClientError("boom"), EscrowFailure.CHAIN_ERROR),
        ],
    )
    def test_classify(self, error, failure):
        assert classify_chain_error(error) == failure

    def test_retryable(self):
        assert EscrowFailure.INSUFFICIENT_FUNDS.retryable
        assert EscrowFailure.TIMEOUT.retryable
        assert EscrowFailure.CHAIN_ERROR.retryable
        assert not EscrowFailure.INVALID_ADDRESS.retryable
        assert not EscrowFailure.NO_WORKER.retryable

    def test_result_to_dict(self):
        result = EscrowResult.failed(EscrowFailure.TIMEOUT, "slow")
        assert result.to_dict()["failure"] == "timeout"
        assert result.to_dict()["success"] is False


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_create(self, chain):
        service = EscrowService(chain)
        result = await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("200"), "LN-1")

        assert result.success
        assert not result.existing
        assert result.escrow_object_id == "0xescrow1"
        assert chain.create_calls == [
            {
                "buyer": BUYER_WALLET,
                "worker": WORKER_WALLET,
                "amount": 200_000_000,
                "reference_key": "LN-1",
            }
        ]

    @pytest.mark.asyncio
    async def test_repeat_call_does_not_resubmit(self, chain):
        service = EscrowService(chain)
        first = await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("5"), "LN-1")
        second = await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("5"), "LN-1")

        assert len(chain.create_calls) == 1
        assert second.existing
        assert second.escrow_object_id == first.escrow_object_id

    @pytest.mark.asyncio
    async def test_concurrent_calls_submit_once(self):
        chain = FakeChainClient(delay=0.05)
        service = EscrowService(chain)

        results = await asyncio.gather(
            *(
                service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("10"), "LN-RACE")
                for _ in range(5)
            )
        )

        assert len(chain.create_calls) == 1
        assert all(r.success for r in results)
        assert {r.escrow_object_id for r in results} == {"0xescrow1"}
        assert sum(1 for r in results if not r.existing) == 1

    @pytest.mark.asyncio
    async def test_escrow_recorded_in_ledger_is_reused(self, chain, ledger, job_service, make_job):
        job = make_job()
        job_service.mark_escrowed(job.id, "0xrecorded", "tx-recorded")
        service = EscrowService(chain, ledger)

        result = await service.create_escrow(
            BUYER_WALLET, WORKER_WALLET, job.amount_usdc, job.reference_key
        )

        assert result.existing
        assert result.escrow_object_id == "0xrecorded"
        assert chain.create_calls == []

    @pytest.mark.asyncio
    async def test_escrow_found_on_chain_is_recovered(self, chain):
        chain.on_chain["LN-CRASH"] = ChainReceipt(tx_digest="tx-old", object_id="0xold")
        service = EscrowService(chain)

        result = await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-CRASH")

        assert result.success
        assert result.existing
        assert result.escrow_object_id == "0xold"
        assert chain.create_calls == []

    @pytest.mark.asyncio
    async def test_no_worker(self, chain):
        service = EscrowService(chain)
        result = await service.create_escrow(BUYER_WALLET, None, Decimal("1"), "LN-1")

        assert not result.success
        assert result.failure == EscrowFailure.NO_WORKER
        assert chain.create_calls == []

    @pytest.mark.asyncio
    async def test_no_buyer_address(self, chain):
        service = EscrowService(chain)
        result = await service.create_escrow(None, WORKER_WALLET, Decimal("1"), "LN-1")
        assert result.failure == EscrowFailure.INVALID_ADDRESS

    @pytest.mark.asyncio
    async def test_reference_key_required(self, chain):
        service = EscrowService(chain)
        with pytest.raises(EscrowServiceError):
            await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "")

    @pytest.mark.asyncio
    async def test_chain_failure_is_returned_not_raised(self, chain):
        chain.create_error = InsufficientFundsError("wallet is empty")
        service = EscrowService(chain)

        result = await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-1")

        assert not result.success
        assert result.failure == EscrowFailure.INSUFFICIENT_FUNDS
        assert "wallet is empty" in result.error

    @pytest.mark.asyncio
    async def test_failed_create_can_be_retried(self, chain):
        chain.create_error = ChainTimeoutError("slow")
        service = EscrowService(chain)
        await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-1")

        chain.create_error = None
        chain.on_chain.clear()
        result = await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-1")

        assert result.success
        assert not result.existing
        assert len(chain.create_calls) == 2

    @pytest.mark.asyncio
    async def test_failed_create_keeps_no_state(self, chain):
        chain.create_error = InsufficientFundsError("wallet is empty")
        service = EscrowService(chain)

        await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-1")

        assert service._locks == {}
        assert service._created == {}

    @pytest.mark.asyncio
    async def test_locks_released_after_concurrent_creates(self):
        chain = FakeChainClient(delay=0.02)
        service = EscrowService(chain)

        await asyncio.gather(
            *(
                service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-1")
                for _ in range(3)
            )
        )

        assert len(chain.create_calls) == 1
        assert service._locks == {}
        assert "LN-1" in service._created

    @pytest.mark.asyncio
    async def test_lookup_failure_is_returned(self, chain):
        chain.find_error = ChainTimeoutError("rpc down")
        service = EscrowService(chain)

        result = await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-1")

        assert result.failure == EscrowFailure.TIMEOUT
        assert chain.create_calls == []

    @pytest.mark.asyncio
    async def test_forget_drops_cached_receipt(self, chain):
        service = EscrowService(chain)
        await service.create_escrow(BUYER_WALLET, WORKER_WALLET, Decimal("1"), "LN-1")

        service.forget("LN-1")
        assert "LN-1" not in service._created
        assert "LN-1" not in service._locks


class TestSettle:
    @pytest.mark.asyncio
    async def test_release(self, chain):
        service = EscrowService(chain)
        result = await service.release_escrow("0xescrow1")

        assert result.success
        assert result.tx_digest == "tx-release-1"
        assert chain.release_calls == ["0xescrow1"]

    @pytest.mark.asyncio
    async def test_release_failure(self, chain):
        chain.release_error = ChainClientError("aborted")
        service = EscrowService(chain)

        result = await service.release_escrow("0xescrow1")
        assert result.failure == EscrowFailure.CHAIN_ERROR

    @pytest.mark.asyncio
    async def test_cancel(self, chain):
        service = EscrowService(chain)
        result = await service.cancel_escrow("0xescrow1")

        assert result.success
        assert chain.cancel_calls == ["0xescrow1"]

    @pytest.mark.asyncio
    async def test_object_id_required(self, chain):
        service = EscrowService(chain)
        with pytest.raises(EscrowServiceError):
            await service.release_escrow("")
