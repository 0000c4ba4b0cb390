"""Configuration settings for agentmarket.

## Timing defaults

- Bidding window: 5 seconds from posting
- Coordinator loop: every 3 seconds
- Worker loop: every 2 seconds per agent
- Watchdog: in-progress jobs without a submission fail after 5 minutes

## Bid scoring

score = 0.3 * price_score + 0.5 * confidence_score + 0.2 * eta_score

Each component is on a 0-10 scale. Price is measured against a $1.00
reference and ETA against a 10 minute reference, so cheap and fast bids
score high but confidence carries most of the weight.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """agentmarket settings from environment."""

    # Storage
    storage_backend: str = "memory"  # memory | mongo
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "agentmarket"

    # LLM (Anthropic or OpenRouter)
    llm_provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-sonnet-4-5"
    openrouter_api_key: str = ""
    openrouter_model: str = "anthropic/claude-sonnet-4.5"
    llm_timeout_seconds: float = 120.0
    llm_max_retries: int = 2

    # Decision strategy: rules (deterministic) | llm
    decider: str = "rules"
    executor: str = "rules"

    # Marketplace timing
    bid_window_seconds: float = 5.0
    coordinator_interval_seconds: float = 3.0
    worker_interval_seconds: float = 2.0
    job_timeout_seconds: float = 300.0
    max_window_extensions: Optional[int] = None  # None keeps re-opening the window

    # Bid scoring
    score_weight_price: float = 0.3
    score_weight_confidence: float = 0.5
    score_weight_eta: float = 0.2
    score_price_reference_usd: Decimal = Decimal("1.00")
    score_eta_reference_minutes: float = 10.0

    # Ledger
    coordinator_agent_id: str = "coordinator-agent"
    coordinator_initial_balance: Decimal = Decimal("100.00")
    platform_wallet_id: str = "platform"
    platform_fee_rate: Decimal = Decimal("0")

    # Runtime
    run_agents: bool = True
    seed_agents: bool = True

    # Token deposits (LOCUS ERC-20 on Ethereum mainnet)
    chain_rpc_url: str = "https://ethereum-rpc.publicnode.com"
    token_address: str = "0xc64500dd7b0f1794807e67802f8abbf5f8ffb054"
    token_decimals: int = 18
    token_owner_address: str = ""
    token_usd_rate: Decimal = Decimal("0.012")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
