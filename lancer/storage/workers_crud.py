"""User and agent (worker) operations for the SQLite ledger.

Agent profiles are owned by profile-management flows; the orchestration core
only reads them, apart from bumping ``jobs_completed`` on payout.
"""

import json
import logging
import sqlite3
from typing import Callable, List, Optional

from lancer.commerce.jobs.models import User, Worker

logger = logging.getLogger(__name__)

_WORKER_SELECT = """
    SELECT a.*, u.wallet_address
    FROM agents a
    JOIN users u ON a.user_id = u.id
"""


def _row_to_worker(row: sqlite3.Row) -> Worker:
    try:
        skills = json.loads(row["skills"] or "[]")
    except (TypeError, json.JSONDecodeError):
        logger.warning(f"Agent {row['id']} has malformed skills JSON, treating as empty")
        skills = []
    return Worker(
        id=row["id"],
        user_id=row["user_id"],
        skills=[str(s) for s in skills],
        is_available=bool(row["is_available"]),
        rating=float(row["rating"] or 0),
        jobs_completed=row["jobs_completed"],
        mcp_endpoint=row["mcp_endpoint"],
        description=row["description"],
        wallet_address=row["wallet_address"],
    )


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        wallet_address=row["wallet_address"],
        role=row["role"],
        display_name=row["display_name"],
    )


def insert_user(
    conn: sqlite3.Connection,
    wallet_address: str,
    role: str,
    now: str,
    display_name: Optional[str] = None,
) -> int:
    cur = conn.execute(
        "INSERT INTO users (wallet_address, role, display_name, created_at) VALUES (?, ?, ?, ?)",
        (wallet_address, role, display_name, now),
    )
    return cur.lastrowid


def insert_worker(
    conn: sqlite3.Connection,
    user_id: int,
    skills: List[str],
    now: str,
    rating: float = 0.0,
    is_available: bool = True,
    mcp_endpoint: Optional[str] = None,
    description: Optional[str] = None,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO agents
        (user_id, mcp_endpoint, skills, description, rating, is_available, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            mcp_endpoint,
            json.dumps([s.lower().strip() for s in skills if s.strip()]),
            description,
            rating,
            1 if is_available else 0,
            now,
            now,
        ),
    )
    return cur.lastrowid


def increment_jobs_completed(conn: sqlite3.Connection, user_id: int, now: str) -> bool:
    cur = conn.execute(
        "UPDATE agents SET jobs_completed = jobs_completed + 1, updated_at = ? WHERE user_id = ?",
        (now, user_id),
    )
    return cur.rowcount > 0


def get_user(connect_fn: Callable, user_id: int) -> Optional[User]:
    with connect_fn() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def get_worker_by_user(connect_fn: Callable, user_id: int) -> Optional[Worker]:
    with connect_fn() as conn:
        row = conn.execute(f"{_WORKER_SELECT} WHERE a.user_id = ?", (user_id,)).fetchone()
    return _row_to_worker(row) if row else None


def list_available_workers(connect_fn: Callable) -> List[Worker]:
    """Available workers, highest rated first (ties broken by experience)."""
    with connect_fn() as conn:
        rows = conn.execute(
            f"""{_WORKER_SELECT}
            WHERE a.is_available = 1
            ORDER BY a.rating DESC, a.jobs_completed DESC, a.id ASC
            """
        ).fetchall()
    return [_row_to_worker(r) for r in rows]


def find_workers_by_skill(connect_fn: Callable, skill: str) -> List[Worker]:
    """Available workers listing ``skill`` anywhere in their skill set, highest rated first."""
    wanted = skill.lower().strip()
    return [w for w in list_available_workers(connect_fn) if w.has_skill(wanted)]
