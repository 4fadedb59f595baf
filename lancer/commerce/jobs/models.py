"""
Job marketplace data models.

Jobs move through a fixed lifecycle::

    unpaid -> escrowed -> working -> delivered -> completed -> paid_out
       |          |          |            |
       +----------+-> cancelled           +-> disputed
                             +-> disputed

``VALID_JOB_TRANSITIONS`` is the only source of truth for which status
changes are allowed. Status values are stored as plain strings and validated
against JobStatus on construction.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from lancer.types import format_datetime, parse_datetime, to_decimal

MAX_TITLE_LENGTH = 200


class JobStatus(str, Enum):
    """Job lifecycle status."""

    UNPAID = "unpaid"  # Created, waiting for buyer payment
    ESCROWED = "escrowed"  # Payment received, funds locked on-chain
    WORKING = "working"  # Agent is performing the task
    DELIVERED = "delivered"  # Agent submitted a delivery
    COMPLETED = "completed"  # Buyer approved, waiting for payout
    PAID_OUT = "paid_out"  # Escrow released to the worker
    CANCELLED = "cancelled"  # Cancelled before work started
    DISPUTED = "disputed"  # Buyer rejected the work


VALID_JOB_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.UNPAID: frozenset({JobStatus.ESCROWED, JobStatus.CANCELLED}),
    JobStatus.ESCROWED: frozenset({JobStatus.WORKING, JobStatus.CANCELLED}),
    JobStatus.WORKING: frozenset({JobStatus.DELIVERED, JobStatus.DISPUTED}),
    JobStatus.DELIVERED: frozenset({JobStatus.COMPLETED, JobStatus.DISPUTED}),
    JobStatus.COMPLETED: frozenset({JobStatus.PAID_OUT}),
    JobStatus.PAID_OUT: frozenset(),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.DISPUTED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.PAID_OUT, JobStatus.CANCELLED})

# Statuses at or past the point where funds are locked on-chain
ESCROWED_OR_LATER = frozenset(
    {
        JobStatus.ESCROWED,
        JobStatus.WORKING,
        JobStatus.DELIVERED,
        JobStatus.COMPLETED,
        JobStatus.PAID_OUT,
        JobStatus.DISPUTED,
    }
)

# Timestamp column written when a job enters each status
STATUS_TIMESTAMP_FIELDS: Dict[JobStatus, str] = {
    JobStatus.ESCROWED: "paid_at",
    JobStatus.WORKING: "started_at",
    JobStatus.DELIVERED: "delivered_at",
    JobStatus.COMPLETED: "completed_at",
    JobStatus.PAID_OUT: "paid_out_at",
    JobStatus.CANCELLED: "cancelled_at",
    JobStatus.DISPUTED: "disputed_at",
}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    """Check a status change against the transition table."""
    try:
        source = JobStatus(from_status)
        target = JobStatus(to_status)
    except ValueError:
        return False
    return target in VALID_JOB_TRANSITIONS[source]


def generate_reference_key(now: Optional[datetime] = None) -> str:
    """Generate a unique payment reference key, e.g. ``LN-20260101-9F2C11AB``."""
    now = now or datetime.now(timezone.utc)
    return f"LN-{now.strftime('%Y%m%d')}-{secrets.token_hex(4).upper()}"


def _status_value(status: Any, enum_cls: type, label: str) -> str:
    value = status.value if isinstance(status, Enum) else status
    valid = {s.value for s in enum_cls}
    if value not in valid:
        raise ValueError(f"Invalid {label}: {value}. Must be one of {sorted(valid)}")
    return value


@dataclass
class Job:
    """A unit of paid work, from invoice to payout."""

    id: Optional[int]
    title: str
    buyer_id: int
    amount_usdc: Decimal
    requirements: Optional[str] = None
    worker_id: Optional[int] = None
    status: str = JobStatus.UNPAID.value
    invoice_id: Optional[str] = None
    reference_key: str = field(default_factory=generate_reference_key)
    escrow_object_id: Optional[str] = None
    escrow_tx_digest: Optional[str] = None
    release_tx_digest: Optional[str] = None
    request_id: Optional[int] = None
    payment_attempts: int = 0
    needs_review: bool = False
    review_note: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paid_out_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _status_value(self.status, JobStatus, "status")
        self.amount_usdc = to_decimal(self.amount_usdc)
        if self.amount_usdc <= 0:
            raise ValueError("Amount must be positive")
        if not self.title or not self.title.strip():
            raise ValueError("Title is required")
        if len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} characters)")

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.job_status in TERMINAL_STATUSES

    @property
    def has_escrow(self) -> bool:
        return bool(self.escrow_object_id)

    def can_transition_to(self, status: JobStatus) -> bool:
        return is_valid_transition(self.status, JobStatus(status).value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "requirements": self.requirements,
            "buyer_id": self.buyer_id,
            "worker_id": self.worker_id,
            "amount_usdc": str(self.amount_usdc),
            "status": self.status,
            "invoice_id": self.invoice_id,
            "reference_key": self.reference_key,
            "escrow_object_id": self.escrow_object_id,
            "escrow_tx_digest": self.escrow_tx_digest,
            "release_tx_digest": self.release_tx_digest,
            "request_id": self.request_id,
            "payment_attempts": self.payment_attempts,
            "needs_review": self.needs_review,
            "review_note": self.review_note,
            "created_at": format_datetime(self.created_at),
            "paid_at": format_datetime(self.paid_at),
            "started_at": format_datetime(self.started_at),
            "delivered_at": format_datetime(self.delivered_at),
            "completed_at": format_datetime(self.completed_at),
            "paid_out_at": format_datetime(self.paid_out_at),
            "cancelled_at": format_datetime(self.cancelled_at),
            "disputed_at": format_datetime(self.disputed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data.get("id"),
            title=data["title"],
            requirements=data.get("requirements"),
            buyer_id=data["buyer_id"],
            worker_id=data.get("worker_id"),
            amount_usdc=to_decimal(data["amount_usdc"]),
            status=data.get("status", JobStatus.UNPAID.value),
            invoice_id=data.get("invoice_id"),
            reference_key=data.get("reference_key") or generate_reference_key(),
            escrow_object_id=data.get("escrow_object_id"),
            escrow_tx_digest=data.get("escrow_tx_digest"),
            release_tx_digest=data.get("release_tx_digest"),
            request_id=data.get("request_id"),
            payment_attempts=data.get("payment_attempts") or 0,
            needs_review=bool(data.get("needs_review")),
            review_note=data.get("review_note"),
            created_at=parse_datetime(data.get("created_at")),
            paid_at=parse_datetime(data.get("paid_at")),
            started_at=parse_datetime(data.get("started_at")),
            delivered_at=parse_datetime(data.get("delivered_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            paid_out_at=parse_datetime(data.get("paid_out_at")),
            cancelled_at=parse_datetime(data.get("cancelled_at")),
            disputed_at=parse_datetime(data.get("disputed_at")),
        )


@dataclass
class JobStateTransition:
    """Audit log entry for a job status change."""

    job_id: int
    from_status: Optional[str]
    to_status: str
    actor: str = "system"
    note: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


class RequestStatus(str, Enum):
    """UserRequest lifecycle status."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class UserRequest:
    """Raw, unstructured demand submitted by a user."""

    id: Optional[int]
    user_id: int
    description: str
    status: str = RequestStatus.PENDING.value
    job_id: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _status_value(self.status, RequestStatus, "request status")

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING.value


@dataclass
class User:
    """A marketplace participant identified by wallet address."""

    id: Optional[int]
    wallet_address: str
    role: str = "buyer"
    display_name: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Worker:
    """A registered agent that can be assigned jobs."""

    id: Optional[int]
    user_id: int
    skills: List[str] = field(default_factory=list)
    is_available: bool = True
    rating: float = 0.0
    jobs_completed: int = 0
    mcp_endpoint: Optional[str] = None
    description: Optional[str] = None
    wallet_address: Optional[str] = None  # joined from users

    @property
    def primary_skill(self) -> Optional[str]:
        return self.skills[0] if self.skills else None

    def has_skill(self, skill: str) -> bool:
        return skill.lower() in (s.lower() for s in self.skills)


@dataclass
class Delivery:
    """Work output attached to a job."""

    job_id: int
    content: str
    delivery_type: str = "text"
    external_url: Optional[str] = None
    notes: Optional[str] = None
    version: int = 1
    id: Optional[int] = None
    created_at: Optional[datetime] = None
