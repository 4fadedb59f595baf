"""Job CRUD operations for the SQLite ledger.

Write helpers take a live connection so SQLiteLedger can compose several of
them inside one transaction (e.g. create a job and close the request that
produced it). Read helpers take the ledger's connection factory.

Status changes go through ``update_job_status`` only, which is a
compare-and-set on the current status: the UPDATE matches zero rows when the
job has already moved on, and the caller decides how to surface that.
"""

import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from lancer.commerce.jobs.models import (
    STATUS_TIMESTAMP_FIELDS,
    Delivery,
    Job,
    JobStateTransition,
    JobStatus,
)
from lancer.types import parse_datetime

logger = logging.getLogger(__name__)

# Columns that may be written together with a status change
TRANSITION_FIELDS = frozenset({"escrow_object_id", "escrow_tx_digest", "release_tx_digest"})

_JOB_COLUMNS = """
    id, title, requirements, buyer_id, agent_id, amount_usdc, status,
    invoice_id, reference_key, escrow_object_id, escrow_tx_digest,
    release_tx_digest, request_id, payment_attempts, needs_review, review_note,
    created_at, paid_at, started_at, delivered_at, completed_at, paid_out_at,
    cancelled_at, disputed_at
"""


def _row_to_job(row: sqlite3.Row) -> Job:
    data = dict(row)
    data["worker_id"] = data.pop("agent_id")
    return Job.from_dict(data)


def _row_to_transition(row: sqlite3.Row) -> JobStateTransition:
    return JobStateTransition(
        id=row["id"],
        job_id=row["job_id"],
        from_status=row["from_status"],
        to_status=row["to_status"],
        actor=row["actor"],
        note=row["note"],
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_delivery(row: sqlite3.Row) -> Delivery:
    return Delivery(
        id=row["id"],
        job_id=row["job_id"],
        content=row["content"],
        delivery_type=row["delivery_type"],
        external_url=row["external_url"],
        notes=row["notes"],
        version=row["version"],
        created_at=parse_datetime(row["created_at"]),
    )


# === Writes (connection-level) ===


def insert_job(conn: sqlite3.Connection, job: Job, now: str, actor: str = "system") -> int:
    """Insert a new job and its initial transition row. Returns the job ID."""
    cur = conn.execute(
        """
        INSERT INTO jobs
        (title, requirements, buyer_id, agent_id, amount_usdc, status, invoice_id,
         reference_key, request_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job.title,
            job.requirements,
            job.buyer_id,
            job.worker_id,
            str(job.amount_usdc),
            job.status,
            job.invoice_id,
            job.reference_key,
            job.request_id,
            job.created_at.isoformat() if job.created_at else now,
        ),
    )
    job_id = cur.lastrowid
    insert_transition(conn, job_id, None, job.status, now, actor=actor)
    return job_id


def insert_transition(
    conn: sqlite3.Connection,
    job_id: int,
    from_status: Optional[str],
    to_status: str,
    now: str,
    actor: str = "system",
    note: Optional[str] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO job_state_transitions (job_id, from_status, to_status, actor, note, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (job_id, from_status, to_status, actor, note, now),
    )
    return cur.lastrowid


def update_job_status(
    conn: sqlite3.Connection,
    job_id: int,
    from_status: JobStatus,
    to_status: JobStatus,
    now: str,
    fields: Optional[Dict[str, Any]] = None,
    actor: str = "system",
    note: Optional[str] = None,
) -> bool:
    """Move a job from ``from_status`` to ``to_status`` if it is still there.

    Writes the status timestamp and any TRANSITION_FIELDS in the same UPDATE,
    then records the transition. Returns False if no row matched.
    """
    fields = dict(fields or {})
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be written with a transition: {sorted(unknown)}")

    assignments = ["status = ?"]
    params: List[Any] = [to_status.value]
    timestamp_field = STATUS_TIMESTAMP_FIELDS.get(to_status)
    if timestamp_field:
        assignments.append(f"{timestamp_field} = ?")
        params.append(now)
    for column, value in sorted(fields.items()):
        assignments.append(f"{column} = ?")
        params.append(value)
    params.extend([job_id, from_status.value])

    cur = conn.execute(
        f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND status = ?",
        params,
    )
    if cur.rowcount == 0:
        return False
    insert_transition(conn, job_id, from_status.value, to_status.value, now, actor, note)
    return True


def set_invoice(conn: sqlite3.Connection, job_id: int, invoice_id: str) -> bool:
    """Attach a provider invoice to an unpaid job."""
    cur = conn.execute(
        "UPDATE jobs SET invoice_id = ?, payment_attempts = 0 WHERE id = ? AND status = ?",
        (invoice_id, job_id, JobStatus.UNPAID.value),
    )
    return cur.rowcount > 0


def increment_payment_attempts(conn: sqlite3.Connection, job_id: int) -> int:
    conn.execute(
        "UPDATE jobs SET payment_attempts = payment_attempts + 1 WHERE id = ?",
        (job_id,),
    )
    row = conn.execute("SELECT payment_attempts FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return row["payment_attempts"] if row else 0


def set_review_flag(conn: sqlite3.Connection, job_id: int, note: str) -> bool:
    cur = conn.execute(
        "UPDATE jobs SET needs_review = 1, review_note = ? WHERE id = ?",
        (note, job_id),
    )
    return cur.rowcount > 0


def clear_review_flag(conn: sqlite3.Connection, job_id: int) -> bool:
    cur = conn.execute(
        "UPDATE jobs SET needs_review = 0, review_note = NULL, payment_attempts = 0 WHERE id = ?",
        (job_id,),
    )
    return cur.rowcount > 0


def insert_delivery(conn: sqlite3.Connection, delivery: Delivery, now: str) -> Delivery:
    """Insert a delivery, numbering it after any earlier ones for the job."""
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM job_deliveries WHERE job_id = ?",
        (delivery.job_id,),
    ).fetchone()
    delivery.version = row["v"] + 1
    cur = conn.execute(
        """
        INSERT INTO job_deliveries
        (job_id, content, delivery_type, external_url, notes, version, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            delivery.job_id,
            delivery.content,
            delivery.delivery_type,
            delivery.external_url,
            delivery.notes,
            delivery.version,
            now,
        ),
    )
    delivery.id = cur.lastrowid
    delivery.created_at = parse_datetime(now)
    return delivery


# === Reads ===


def get_job(connect_fn: Callable, job_id: int) -> Optional[Job]:
    with connect_fn() as conn:
        row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def get_job_by_reference(connect_fn: Callable, reference_key: str) -> Optional[Job]:
    with connect_fn() as conn:
        row = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE reference_key = ?", (reference_key,)
        ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    connect_fn: Callable,
    status: Optional[JobStatus] = None,
    buyer_id: Optional[int] = None,
    worker_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Job]:
    """List jobs, newest first."""
    clauses = []
    params: List[Any] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(JobStatus(status).value)
    if buyer_id is not None:
        clauses.append("buyer_id = ?")
        params.append(buyer_id)
    if worker_id is not None:
        clauses.append("agent_id = ?")
        params.append(worker_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.extend([limit, offset])

    with connect_fn() as conn:
        rows = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY created_at DESC, id DESC "
            "LIMIT ? OFFSET ?",
            params,
        ).fetchall()
    return [_row_to_job(r) for r in rows]


def list_unpaid_jobs_with_invoices(connect_fn: Callable, limit: int) -> List[Job]:
    """Unpaid jobs awaiting payment confirmation, oldest first.

    Jobs flagged for manual review are left out.
    """
    with connect_fn() as conn:
        rows = conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
            WHERE status = ? AND invoice_id IS NOT NULL AND needs_review = 0
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (JobStatus.UNPAID.value, limit),
        ).fetchall()
    return [_row_to_job(r) for r in rows]


def get_transitions(connect_fn: Callable, job_id: int) -> List[JobStateTransition]:
    with connect_fn() as conn:
        rows = conn.execute(
            "SELECT * FROM job_state_transitions WHERE job_id = ? ORDER BY id ASC",
            (job_id,),
        ).fetchall()
    return [_row_to_transition(r) for r in rows]


def get_deliveries(connect_fn: Callable, job_id: int) -> List[Delivery]:
    with connect_fn() as conn:
        rows = conn.execute(
            "SELECT * FROM job_deliveries WHERE job_id = ? ORDER BY version DESC",
            (job_id,),
        ).fetchall()
    return [_row_to_delivery(r) for r in rows]
