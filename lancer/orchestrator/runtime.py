"""Wiring for the orchestration daemon.

``Runtime.from_settings`` builds the ledger, collaborators and both
reconcilers from Settings. The payment loop needs a payment provider and an
escrow chain; when either is not configured it is left out and only the
request loop runs.
"""

import asyncio
import logging
import signal
from decimal import Decimal
from typing import List, Optional, Tuple

from lancer.agents.executor import McpAgentExecutor
from lancer.commerce.escrow.service import EscrowService
from lancer.commerce.escrow.sui import NETWORK_RPC_URLS, SuiChainClient
from lancer.commerce.jobs.service import JobService
from lancer.config import Settings
from lancer.intent.classifier import build_classifier
from lancer.orchestrator.loop import PollingLoop
from lancer.orchestrator.payments import PaymentReconciler
from lancer.orchestrator.requests import RequestReconciler
from lancer.orchestrator.settlement import SettlementService
from lancer.payments.beep import BeepPaymentProvider
from lancer.protocols import AgentExecutor, ChainClient, PaymentProvider
from lancer.storage.sqlite import SQLiteLedger

logger = logging.getLogger(__name__)


def build_chain_client(settings: Settings) -> Optional[SuiChainClient]:
    if not settings.escrow_configured:
        return None
    rpc_url = settings.sui_rpc_url or NETWORK_RPC_URLS.get(settings.sui_network)
    if not rpc_url:
        raise ValueError(f"Unknown Sui network {settings.sui_network!r}; set LANCER_SUI_RPC_URL")
    return SuiChainClient(
        rpc_url=rpc_url,
        package_id=settings.sui_escrow_package_id,
        coin_type=settings.sui_usdc_coin_type,
        private_key=settings.sui_private_key,
        gas_budget=settings.sui_gas_budget,
    )


def amount_limit_overrides(
    settings: Settings, ledger: SQLiteLedger
) -> Optional[Tuple[Decimal, Decimal]]:
    """Job amount limits when Settings overrides the platform config, else None."""
    if settings.min_job_amount_usdc is None and settings.max_job_amount_usdc is None:
        return None
    db_min, db_max = ledger.get_amount_limits()
    low = settings.min_job_amount_usdc if settings.min_job_amount_usdc is not None else db_min
    high = settings.max_job_amount_usdc if settings.max_job_amount_usdc is not None else db_max
    if low > high:
        raise ValueError(f"Minimum job amount {low} exceeds maximum {high}")
    return (low, high)


class Runtime:
    """Everything the CLI needs, built once."""

    def __init__(
        self,
        settings: Settings,
        ledger: SQLiteLedger,
        provider: Optional[PaymentProvider] = None,
        chain_client: Optional[ChainClient] = None,
        executor: Optional[AgentExecutor] = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.job_service = JobService(ledger)
        self.provider = provider
        self.escrow = EscrowService(chain_client, ledger) if chain_client else None
        self.settlement = SettlementService(self.job_service, self.escrow, provider)

        poller = settings.poller_config()
        limits = amount_limit_overrides(settings, ledger)
        min_budget = (limits or ledger.get_amount_limits())[0]

        self.requests = RequestReconciler(
            ledger,
            build_classifier(
                settings.openai_api_key, settings.llm_model, settings.llm_base_url, min_budget
            ),
            batch_size=poller.batch_size,
            amount_limits=limits,
        )

        self.payments: Optional[PaymentReconciler] = None
        if provider is not None and self.escrow is not None:
            self.payments = PaymentReconciler(
                ledger,
                self.job_service,
                provider,
                self.escrow,
                executor=executor,
                batch_size=poller.batch_size,
                auto_trigger_agent=poller.auto_trigger_agent,
                max_retries=poller.max_retries,
            )
        else:
            missing = "payment provider" if provider is None else "escrow chain"
            logger.warning(f"No {missing} configured; payment reconciliation is disabled")

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        ledger = SQLiteLedger(settings.db_path)
        provider = None
        if settings.beep_api_key:
            provider = BeepPaymentProvider(settings.beep_api_key, settings.beep_api_base)
        executor = McpAgentExecutor(settings.agent_mcp_url, timeout=settings.agent_timeout_seconds)
        return cls(
            settings,
            ledger,
            provider=provider,
            chain_client=build_chain_client(settings),
            executor=executor,
        )

    def loops(self) -> List[PollingLoop]:
        poller = self.settings.poller_config()
        loops = [PollingLoop("requests", self.requests.tick, poller.request_poll_interval_ms)]
        if self.payments is not None:
            loops.append(
                PollingLoop("payments", self.payments.tick, poller.payment_poll_interval_ms)
            )
        return loops

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        """Run the loops until ``stop_event`` is set or SIGINT/SIGTERM arrives."""
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name} on this platform")

        loops = self.loops()
        for polling_loop in loops:
            polling_loop.start()
        logger.info(f"lancer running ({len(loops)} loops, ledger {self.ledger.db_path})")
        try:
            await stop_event.wait()
        finally:
            logger.info("Shutting down, waiting for in-flight ticks")
            await asyncio.gather(*(polling_loop.stop() for polling_loop in loops))
