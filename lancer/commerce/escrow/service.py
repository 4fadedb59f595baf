"""
Escrow orchestration.

EscrowService wraps a ChainClient and is the only path by which lancer
locks, releases or refunds funds. Creation is idempotent on the job's
reference key, checked in three places:

1. the ledger: a job that already records an escrow is returned as-is
2. a per-key asyncio.Lock: concurrent callers for one key are serialized
   and the second one sees the first one's result
3. the chain: before submitting, the client is asked for an escrow already
   tagged with the key (covers a crash between chain submit and ledger write)

Chain failures never raise out of this service; they come back as an
EscrowResult with an EscrowFailure so callers can decide between retry and
escalation.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional

from lancer.protocols import (
    ChainClient,
    ChainClientError,
    ChainReceipt,
    ChainTimeoutError,
    InsufficientFundsError,
    InvalidAddressError,
    LancerError,
)
from lancer.types import usdc_to_base_units

if TYPE_CHECKING:
    from lancer.storage.sqlite import SQLiteLedger

logger = logging.getLogger(__name__)


class EscrowServiceError(LancerError):
    """Raised for escrow misuse that is not a chain failure."""

    pass


class EscrowFailure(str, Enum):
    """Why an escrow operation did not go through."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_ADDRESS = "invalid_address"
    TIMEOUT = "timeout"
    CHAIN_ERROR = "chain_error"
    NO_WORKER = "no_worker"

    @property
    def retryable(self) -> bool:
        return self not in (EscrowFailure.INVALID_ADDRESS, EscrowFailure.NO_WORKER)


@dataclass
class EscrowResult:
    """Outcome of an escrow operation."""

    success: bool
    escrow_object_id: Optional[str] = None
    tx_digest: Optional[str] = None
    failure: Optional[EscrowFailure] = None
    error: Optional[str] = None
    existing: bool = False  # True when no new chain transaction was submitted

    @classmethod
    def failed(cls, failure: EscrowFailure, error: str) -> "EscrowResult":
        return cls(success=False, failure=failure, error=error)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "escrow_object_id": self.escrow_object_id,
            "tx_digest": self.tx_digest,
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
            "existing": self.existing,
        }


def classify_chain_error(error: ChainClientError) -> EscrowFailure:
    if isinstance(error, InsufficientFundsError):
        return EscrowFailure.INSUFFICIENT_FUNDS
    if isinstance(error, InvalidAddressError):
        return EscrowFailure.INVALID_ADDRESS
    if isinstance(error, ChainTimeoutError):
        return EscrowFailure.TIMEOUT
    return EscrowFailure.CHAIN_ERROR


class EscrowService:
    """Idempotent escrow creation, release and refund."""

    def __init__(self, chain_client: ChainClient, ledger: Optional["SQLiteLedger"] = None):
        self.chain_client = chain_client
        self.ledger = ledger
        # Per-key locks, kept only while a create for that key is in flight
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        # Escrows created by this process and not yet visible in the ledger
        self._created: Dict[str, ChainReceipt] = {}

    @contextlib.asynccontextmanager
    async def _key_lock(self, reference_key: str):
        lock = self._locks.setdefault(reference_key, asyncio.Lock())
        self._lock_users[reference_key] = self._lock_users.get(reference_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[reference_key] -= 1
            if not self._lock_users[reference_key]:
                del self._lock_users[reference_key]
                del self._locks[reference_key]

    def _known_escrow(self, reference_key: str) -> Optional[EscrowResult]:
        receipt = self._created.get(reference_key)
        if receipt is not None:
            return EscrowResult(
                success=True,
                escrow_object_id=receipt.object_id,
                tx_digest=receipt.tx_digest,
                existing=True,
            )
        if self.ledger is None:
            return None
        job = self.ledger.get_job_by_reference(reference_key)
        if job is not None and job.escrow_object_id:
            return EscrowResult(
                success=True,
                escrow_object_id=job.escrow_object_id,
                tx_digest=job.escrow_tx_digest,
                existing=True,
            )
        return None

    async def create_escrow(
        self,
        buyer_address: Optional[str],
        worker_address: Optional[str],
        amount: Decimal,
        reference_key: str,
    ) -> EscrowResult:
        """Lock ``amount`` USDC for ``reference_key``, at most once."""
        if not reference_key:
            raise EscrowServiceError("Reference key is required")

        known = self._known_escrow(reference_key)
        if known:
            logger.debug(f"Escrow for {reference_key} already recorded: {known.escrow_object_id}")
            return known

        if not worker_address:
            return EscrowResult.failed(
                EscrowFailure.NO_WORKER, f"No worker assigned for {reference_key}"
            )
        if not buyer_address:
            return EscrowResult.failed(
                EscrowFailure.INVALID_ADDRESS, f"No buyer address for {reference_key}"
            )

        async with self._key_lock(reference_key):
            known = self._known_escrow(reference_key)
            if known:
                return known

            try:
                found = await self.chain_client.find_escrow(reference_key)
                if found is not None:
                    logger.info(
                        f"Recovered on-chain escrow {found.object_id} for {reference_key}"
                    )
                    self._created[reference_key] = found
                    return EscrowResult(
                        success=True,
                        escrow_object_id=found.object_id,
                        tx_digest=found.tx_digest,
                        existing=True,
                    )

                receipt = await self.chain_client.submit_escrow_create(
                    buyer_address,
                    worker_address,
                    usdc_to_base_units(amount),
                    reference_key,
                )
            except ChainClientError as e:
                failure = classify_chain_error(e)
                logger.warning(f"Escrow creation for {reference_key} failed ({failure.value}): {e}")
                return EscrowResult.failed(failure, str(e))

            self._created[reference_key] = receipt
            logger.info(
                f"Escrow {receipt.object_id} created for {reference_key} "
                f"({amount} USDC, tx {receipt.tx_digest})"
            )
            return EscrowResult(
                success=True,
                escrow_object_id=receipt.object_id,
                tx_digest=receipt.tx_digest,
            )

    def forget(self, reference_key: str):
        """Drop in-process state for a key once the ledger records the escrow."""
        self._created.pop(reference_key, None)

    async def release_escrow(self, escrow_object_id: str) -> EscrowResult:
        """Release escrowed funds to the worker."""
        return await self._settle("release", escrow_object_id)

    async def cancel_escrow(self, escrow_object_id: str) -> EscrowResult:
        """Refund escrowed funds to the buyer."""
        return await self._settle("cancel", escrow_object_id)

    async def _settle(self, action: str, escrow_object_id: str) -> EscrowResult:
        if not escrow_object_id:
            raise EscrowServiceError(f"Escrow object id is required to {action}")
        submit = (
            self.chain_client.submit_escrow_release
            if action == "release"
            else self.chain_client.submit_escrow_cancel
        )
        try:
            receipt = await submit(escrow_object_id)
        except ChainClientError as e:
            failure = classify_chain_error(e)
            logger.warning(f"Escrow {action} for {escrow_object_id} failed ({failure.value}): {e}")
            return EscrowResult.failed(failure, str(e))
        return EscrowResult(
            success=True, escrow_object_id=escrow_object_id, tx_digest=receipt.tx_digest
        )
