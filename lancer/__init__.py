"""
Lancer - orchestration core for an agent work marketplace.

Turns free-text requests into jobs, follows their invoices, locks payment in
on-chain escrow, dispatches work to agents and releases payment on approval.
"""

from lancer.commerce.jobs.models import Job, JobStatus
from lancer.storage.sqlite import SQLiteLedger

try:
    from importlib.metadata import version

    __version__ = version("lancer")
except Exception:
    __version__ = "0.0.0"

__all__ = ["Job", "JobStatus", "SQLiteLedger"]
