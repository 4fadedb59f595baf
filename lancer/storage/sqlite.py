"""SQLite job ledger for lancer.

SQLiteLedger is the only writer of persisted marketplace state. Connections
are opened per operation; every multi-step write (job + request, status +
delivery, status + worker stats) runs inside a single transaction.
"""

import contextlib
import logging
import sqlite3
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from lancer.commerce.jobs.models import (
    Delivery,
    Job,
    JobStateTransition,
    JobStatus,
    RequestStatus,
    User,
    UserRequest,
    Worker,
)
from lancer.protocols import StorageError
from lancer.types import to_decimal, utc_now

from . import jobs_crud, requests_crud, workers_crud
from .schema import init_db

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "lancer.db"


def default_db_path() -> Path:
    """``~/.lancer/lancer.db``, or the system temp dir when home is not writable."""
    home_dir = Path.home() / ".lancer"
    try:
        home_dir.mkdir(parents=True, exist_ok=True)
        return home_dir / DEFAULT_DB_NAME
    except OSError as e:
        fallback_dir = Path(tempfile.gettempdir()) / ".lancer"
        logger.warning(f"Cannot write to {home_dir} ({e}), falling back to {fallback_dir}")
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / DEFAULT_DB_NAME


class SQLiteLedger:
    """Typed data access for jobs, requests, workers, deliveries and config."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # === Connection handling ===

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error and always closes."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open ledger at {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn, utc_now())

    def _now(self) -> str:
        return utc_now()

    # === Platform config ===

    def get_platform_config(self) -> Dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM platform_config").fetchall()
        return {r["key"]: r["value"] for r in rows}

    def set_platform_config(self, key: str, value: Any, description: Optional[str] = None):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO platform_config (key, value, description, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, str(value), description, self._now()),
            )

    def get_amount_limits(self) -> Tuple[Decimal, Decimal]:
        """(min, max) job amount in USDC from platform config."""
        config = self.get_platform_config()
        return (
            to_decimal(config.get("min_job_amount_usdc", "1")),
            to_decimal(config.get("max_job_amount_usdc", "10000")),
        )

    # === Users and workers ===

    def create_user(
        self, wallet_address: str, role: str = "buyer", display_name: Optional[str] = None
    ) -> User:
        with self._connect() as conn:
            user_id = workers_crud.insert_user(
                conn, wallet_address, role, self._now(), display_name
            )
        return User(id=user_id, wallet_address=wallet_address, role=role, display_name=display_name)

    def register_worker(
        self,
        wallet_address: str,
        skills: List[str],
        rating: float = 0.0,
        is_available: bool = True,
        mcp_endpoint: Optional[str] = None,
        description: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Worker:
        """Create an agent user and its capability profile."""
        now = self._now()
        with self._connect() as conn:
            user_id = workers_crud.insert_user(conn, wallet_address, "agent", now, display_name)
            workers_crud.insert_worker(
                conn, user_id, skills, now, rating, is_available, mcp_endpoint, description
            )
        return self.get_worker_by_user(user_id)

    def get_user(self, user_id: int) -> Optional[User]:
        return workers_crud.get_user(self._connect, user_id)

    def get_worker_by_user(self, user_id: int) -> Optional[Worker]:
        return workers_crud.get_worker_by_user(self._connect, user_id)

    def list_available_workers(self) -> List[Worker]:
        return workers_crud.list_available_workers(self._connect)

    def find_workers_by_skill(self, skill: str) -> List[Worker]:
        return workers_crud.find_workers_by_skill(self._connect, skill)

    # === User requests ===

    def submit_request(self, user_id: int, description: str) -> UserRequest:
        if not description or not description.strip():
            raise ValueError("Request description is required")
        with self._connect() as conn:
            request_id = requests_crud.insert_request(conn, user_id, description, self._now())
        return self.get_request(request_id)

    def get_request(self, request_id: int) -> Optional[UserRequest]:
        return requests_crud.get_request(self._connect, request_id)

    def list_pending_requests(self, limit: int) -> List[UserRequest]:
        return requests_crud.list_pending_requests(self._connect, limit)

    def fail_request(self, request_id: int, error_message: str) -> bool:
        with self._connect() as conn:
            return requests_crud.close_request(
                conn, request_id, RequestStatus.FAILED, self._now(), error_message=error_message
            )

    def create_job_for_request(self, request_id: int, job: Job) -> Optional[Job]:
        """Create ``job`` and mark the request processed, atomically.

        Returns None (and writes nothing) if the request is no longer pending.
        """
        now = self._now()
        job.request_id = request_id
        with self._connect() as conn:
            if not requests_crud.close_request(conn, request_id, RequestStatus.PROCESSED, now):
                return None
            job_id = jobs_crud.insert_job(conn, job, now, actor="request-reconciler")
            conn.execute("UPDATE user_requests SET job_id = ? WHERE id = ?", (job_id, request_id))
        return self.get_job(job_id)

    # === Jobs ===

    def create_job(self, job: Job, actor: str = "system") -> Job:
        with self._connect() as conn:
            job_id = jobs_crud.insert_job(conn, job, self._now(), actor=actor)
        return self.get_job(job_id)

    def get_job(self, job_id: int) -> Optional[Job]:
        return jobs_crud.get_job(self._connect, job_id)

    def get_job_by_reference(self, reference_key: str) -> Optional[Job]:
        return jobs_crud.get_job_by_reference(self._connect, reference_key)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        buyer_id: Optional[int] = None,
        worker_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        return jobs_crud.list_jobs(self._connect, status, buyer_id, worker_id, limit, offset)

    def list_unpaid_jobs_with_invoices(self, limit: int) -> List[Job]:
        return jobs_crud.list_unpaid_jobs_with_invoices(self._connect, limit)

    def transition_job(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        fields: Optional[Dict[str, Any]] = None,
        actor: str = "system",
        note: Optional[str] = None,
    ) -> bool:
        """Compare-and-set a job's status. Returns False if the job was not in ``from_status``."""
        with self._connect() as conn:
            return jobs_crud.update_job_status(
                conn, job_id, from_status, to_status, self._now(), fields, actor, note
            )

    def deliver_job(
        self,
        job_id: int,
        delivery: Delivery,
        actor: str = "system",
    ) -> Optional[Delivery]:
        """Store a delivery and move the job working -> delivered in one transaction.

        Returns None (nothing stored) if the job is not working.
        """
        now = self._now()
        with self._connect() as conn:
            moved = jobs_crud.update_job_status(
                conn, job_id, JobStatus.WORKING, JobStatus.DELIVERED, now, actor=actor
            )
            if not moved:
                return None
            return jobs_crud.insert_delivery(conn, delivery, now)

    def pay_out_job(self, job_id: int, release_tx_digest: str, worker_user_id: Optional[int]) -> bool:
        """completed -> paid_out with the release digest, bumping the worker's job count."""
        now = self._now()
        with self._connect() as conn:
            moved = jobs_crud.update_job_status(
                conn,
                job_id,
                JobStatus.COMPLETED,
                JobStatus.PAID_OUT,
                now,
                fields={"release_tx_digest": release_tx_digest},
                actor="escrow-release",
            )
            if moved and worker_user_id is not None:
                workers_crud.increment_jobs_completed(conn, worker_user_id, now)
        return moved

    def attach_invoice(self, job_id: int, invoice_id: str) -> bool:
        with self._connect() as conn:
            return jobs_crud.set_invoice(conn, job_id, invoice_id)

    def record_payment_failure(self, job_id: int) -> int:
        """Increment and return the job's failed payment-processing attempts."""
        with self._connect() as conn:
            return jobs_crud.increment_payment_attempts(conn, job_id)

    def flag_for_review(self, job_id: int, note: str) -> bool:
        with self._connect() as conn:
            return jobs_crud.set_review_flag(conn, job_id, note)

    def clear_review_flag(self, job_id: int) -> bool:
        with self._connect() as conn:
            return jobs_crud.clear_review_flag(conn, job_id)

    def get_transitions(self, job_id: int) -> List[JobStateTransition]:
        return jobs_crud.get_transitions(self._connect, job_id)

    def get_deliveries(self, job_id: int) -> List[Delivery]:
        return jobs_crud.get_deliveries(self._connect, job_id)
