"""UserRequest CRUD operations for the SQLite ledger.

A request leaves ``pending`` exactly once. ``close_request`` only matches
rows that are still pending, so a request can never be processed twice even
if two workers read it.
"""

import logging
import sqlite3
from typing import Callable, List, Optional

from lancer.commerce.jobs.models import RequestStatus, UserRequest
from lancer.types import parse_datetime

logger = logging.getLogger(__name__)


def _row_to_request(row: sqlite3.Row) -> UserRequest:
    return UserRequest(
        id=row["id"],
        user_id=row["user_id"],
        description=row["description"],
        status=row["status"],
        job_id=row["job_id"],
        error_message=row["error_message"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def insert_request(conn: sqlite3.Connection, user_id: int, description: str, now: str) -> int:
    cur = conn.execute(
        """
        INSERT INTO user_requests (user_id, description, status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (user_id, description, RequestStatus.PENDING.value, now, now),
    )
    return cur.lastrowid


def close_request(
    conn: sqlite3.Connection,
    request_id: int,
    status: RequestStatus,
    now: str,
    job_id: Optional[int] = None,
    error_message: Optional[str] = None,
) -> bool:
    """Move a pending request to a terminal status. Returns False if it was not pending."""
    if status == RequestStatus.PENDING:
        raise ValueError("close_request requires a terminal status")
    cur = conn.execute(
        """
        UPDATE user_requests
        SET status = ?, job_id = ?, error_message = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (status.value, job_id, error_message, now, request_id, RequestStatus.PENDING.value),
    )
    return cur.rowcount > 0


def get_request(connect_fn: Callable, request_id: int) -> Optional[UserRequest]:
    with connect_fn() as conn:
        row = conn.execute("SELECT * FROM user_requests WHERE id = ?", (request_id,)).fetchone()
    return _row_to_request(row) if row else None


def list_pending_requests(connect_fn: Callable, limit: int) -> List[UserRequest]:
    """Oldest pending requests first."""
    with connect_fn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM user_requests
            WHERE status = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (RequestStatus.PENDING.value, limit),
        ).fetchall()
    return [_row_to_request(r) for r in rows]
