"""Background reconciliation loops and the actions they share state with."""

from lancer.orchestrator.loop import PollingLoop, Reconciler, SingleFlight, TickReport
from lancer.orchestrator.payments import (
    EscalationPolicy,
    EscrowCreationFailed,
    FlagForReview,
    PaymentReconciler,
)
from lancer.orchestrator.requests import RequestReconciler
from lancer.orchestrator.settlement import SettlementService

__all__ = [
    "PollingLoop",
    "Reconciler",
    "SingleFlight",
    "TickReport",
    "RequestReconciler",
    "PaymentReconciler",
    "EscalationPolicy",
    "EscrowCreationFailed",
    "FlagForReview",
    "SettlementService",
]
