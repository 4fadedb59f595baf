"""
Contracts between the orchestration core and its collaborators.

The core talks to four systems it does not own: the payment provider, the
escrow chain, the intent classifier and the agent executor. Each is described
here as a ``typing.Protocol`` so the reconciliation loops can be driven by the
production clients (``lancer.payments``, ``lancer.commerce.escrow.sui``,
``lancer.intent``, ``lancer.agents``) or by test doubles.

All lancer exceptions derive from LancerError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol, runtime_checkable

# =============================================================================
# Errors
# =============================================================================


class LancerError(Exception):
    """Base for all lancer errors."""

    pass


class StorageError(LancerError):
    """Raised when the job ledger cannot be read or written."""

    pass


class PaymentProviderError(LancerError):
    """Raised when the payment provider call fails (transient)."""

    pass


class InvoiceNotFoundError(PaymentProviderError):
    """Raised when the provider has no invoice with the given id."""

    pass


class ChainClientError(LancerError):
    """Raised when the chain client cannot complete a submission."""

    pass


class InsufficientFundsError(ChainClientError):
    """The signing wallet cannot cover the escrow amount or gas."""

    pass


class InvalidAddressError(ChainClientError):
    """A buyer or worker address is not a valid chain address."""

    pass


class ChainTimeoutError(ChainClientError):
    """The chain RPC did not answer in time."""

    pass


class ClassificationError(LancerError):
    """Raised when a request cannot be classified at all."""

    pass


class AgentExecutorError(LancerError):
    """Raised when the agent executor cannot be reached."""

    pass


# =============================================================================
# Payment provider
# =============================================================================


class InvoiceStatus(str, Enum):
    """Invoice status as reported by the payment provider."""

    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class Invoice:
    """An invoice issued by the payment provider."""

    invoice_id: str
    reference_key: str
    amount: Decimal
    status: InvoiceStatus = InvoiceStatus.PENDING
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None


@runtime_checkable
class PaymentProvider(Protocol):
    async def get_invoice_status(self, invoice_id: str) -> InvoiceStatus: ...

    async def create_invoice(
        self, amount: Decimal, reference_key: str, description: Optional[str] = None
    ) -> Invoice: ...


# =============================================================================
# Chain client
# =============================================================================


@dataclass
class ChainReceipt:
    """Result of a confirmed chain submission."""

    tx_digest: str
    object_id: Optional[str] = None


@runtime_checkable
class ChainClient(Protocol):
    """Submits escrow operations to the escrow contract.

    Implementations raise ChainClientError subclasses on failure.
    """

    async def submit_escrow_create(
        self,
        buyer_address: str,
        worker_address: str,
        amount_base_units: int,
        reference_key: str,
    ) -> ChainReceipt: ...

    async def submit_escrow_release(self, escrow_object_id: str) -> ChainReceipt: ...

    async def submit_escrow_cancel(self, escrow_object_id: str) -> ChainReceipt: ...

    async def find_escrow(self, reference_key: str) -> Optional[ChainReceipt]: ...


# =============================================================================
# Intent classifier
# =============================================================================


@dataclass
class ClassifiedIntent:
    """Structured reading of a free-text request."""

    summary: str
    estimated_budget: Optional[Decimal]
    skills: List[str] = field(default_factory=list)
    complexity: str = "medium"

    @property
    def primary_skill(self) -> str:
        return self.skills[0] if self.skills else "general"


@runtime_checkable
class IntentClassifier(Protocol):
    async def classify(self, text: str) -> ClassifiedIntent: ...


# =============================================================================
# Agent executor
# =============================================================================


@dataclass
class ExecutionResult:
    """Outcome of asking an agent to perform a job."""

    success: bool
    content: Optional[str] = None
    error: Optional[str] = None
    delivery_type: str = "text"


@runtime_checkable
class AgentExecutor(Protocol):
    async def execute(
        self,
        job_id: int,
        title: str,
        requirements: Optional[str],
        task_type: str,
        *,
        endpoint: Optional[str] = None,
    ) -> ExecutionResult: ...
