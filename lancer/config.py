"""Configuration settings for lancer."""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


@dataclass
class PollerConfig:
    """Settings shared by the reconciliation loops."""

    payment_poll_interval_ms: int = 10_000
    request_poll_interval_ms: int = 5_000
    batch_size: int = 5
    auto_trigger_agent: bool = True
    max_retries: int = 3


class Settings(BaseSettings):
    """Settings loaded from ``LANCER_*`` environment variables and ``.env``."""

    # Ledger
    db_path: Optional[Path] = None  # defaults to ~/.lancer/lancer.db

    # Loops
    payment_poll_interval_ms: int = Field(10_000, gt=0)
    request_poll_interval_ms: int = Field(5_000, gt=0)
    batch_size: int = Field(5, ge=1)
    auto_trigger_agent: bool = True
    max_retries: int = Field(3, ge=1)

    # Job amount limits; None defers to the ledger's platform config
    min_job_amount_usdc: Optional[Decimal] = None
    max_job_amount_usdc: Optional[Decimal] = None

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    # Payment provider
    beep_api_base: str = "https://api.justbeep.it"
    beep_api_key: Optional[str] = None

    # Sui escrow
    sui_network: str = "testnet"
    sui_rpc_url: Optional[str] = None  # defaults to the network's public full node
    sui_escrow_package_id: Optional[str] = None
    sui_usdc_coin_type: Optional[str] = None
    sui_private_key: Optional[str] = None  # base64 Ed25519 secret key
    sui_gas_budget: int = Field(10_000_000, gt=0)

    # Intent classifier
    openai_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    llm_base_url: Optional[str] = None

    # Agent executor
    agent_mcp_url: Optional[str] = None  # used when the worker has no endpoint
    agent_timeout_seconds: float = Field(300.0, gt=0)

    class Config:
        env_prefix = "LANCER_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def poller_config(self) -> PollerConfig:
        return PollerConfig(
            payment_poll_interval_ms=self.payment_poll_interval_ms,
            request_poll_interval_ms=self.request_poll_interval_ms,
            batch_size=self.batch_size,
            auto_trigger_agent=self.auto_trigger_agent,
            max_retries=self.max_retries,
        )

    @property
    def escrow_configured(self) -> bool:
        return bool(self.sui_escrow_package_id and self.sui_usdc_coin_type and self.sui_private_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
