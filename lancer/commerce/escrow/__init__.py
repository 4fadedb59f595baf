"""Escrow subsystem for lancer.

Funds are locked in the lancer escrow Move package on Sui once the buyer's
invoice is paid, and released to the worker on approval.

Modules:
- service.py: Idempotent escrow orchestration (create, release, cancel)
- sui.py: Sui JSON-RPC chain client
"""

from lancer.commerce.escrow.service import (
    EscrowFailure,
    EscrowResult,
    EscrowService,
    EscrowServiceError,
)
from lancer.commerce.escrow.sui import SuiChainClient

__all__ = [
    "EscrowService",
    "EscrowServiceError",
    "EscrowResult",
    "EscrowFailure",
    "SuiChainClient",
]
