"""Application settings and configuration."""
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables."""

    # General
    log_level: str = Field(
        default="INFO",
        description="Root log level",
        alias="LOG_LEVEL"
    )

    enabled_chains: str = Field(
        default="ethereum,bsc,solana",
        description="Comma-separated list of chains to watch",
        alias="ENABLED_CHAINS"
    )

    # RPC and relay endpoints
    ethereum_rpc_url: Optional[str] = Field(
        default=None,
        description="Ethereum mainnet RPC URL",
        alias="ETHEREUM_RPC_URL"
    )

    bsc_rpc_url: Optional[str] = Field(
        default=None,
        description="BNB Smart Chain RPC URL",
        alias="BSC_RPC_URL"
    )

    solana_rpc_url: Optional[str] = Field(
        default=None,
        description="Solana RPC URL",
        alias="SOLANA_RPC_URL"
    )

    flashbots_relay_url: str = Field(
        default="https://relay.flashbots.net",
        description="Flashbots relay endpoint",
        alias="FLASHBOTS_RELAY_URL"
    )

    flashbots_auth_key: Optional[str] = Field(
        default=None,
        description="Private key used only to sign Flashbots relay requests",
        alias="FLASHBOTS_AUTH_KEY"
    )

    bloxroute_endpoint: str = Field(
        default="https://api.blxrbdn.com",
        description="bloXroute bundle endpoint",
        alias="BLOXROUTE_ENDPOINT"
    )

    bloxroute_auth_header: Optional[str] = Field(
        default=None,
        description="bloXroute Authorization header value",
        alias="BLOXROUTE_AUTH_HEADER"
    )

    jito_block_engine_url: str = Field(
        default="https://mainnet.block-engine.jito.wtf/api/v1/bundles",
        description="Jito block engine bundle endpoint",
        alias="JITO_BLOCK_ENGINE_URL"
    )

    relay_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single relay or RPC request",
        alias="RELAY_TIMEOUT_SECONDS"
    )

    # Cache
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for the shared pool state mirror (disabled when unset)",
        alias="REDIS_URL"
    )

    redis_socket_timeout_seconds: float = Field(
        default=0.25,
        description="Socket timeout for pool state mirror reads and writes",
        alias="REDIS_SOCKET_TIMEOUT_SECONDS"
    )

    redis_max_connections: int = Field(
        default=10,
        description="Connection pool size of the pool state mirror",
        alias="REDIS_MAX_CONNECTIONS"
    )

    pool_mirror_ttl_seconds: int = Field(
        default=60,
        description="Expiry of pool states written to the Redis mirror",
        alias="POOL_MIRROR_TTL_SECONDS"
    )

    pool_cache_max_entries: int = Field(
        default=5000,
        description="Maximum pools held in the in-memory state cache",
        alias="POOL_CACHE_MAX_ENTRIES"
    )

    pool_cache_max_age_seconds: float = Field(
        default=12.0,
        description="Age after which a cached pool state counts as stale",
        alias="POOL_CACHE_MAX_AGE_SECONDS"
    )

    # Detection
    min_price_impact_bps: int = Field(
        default=100,
        description="Minimum victim price impact (basis points) to emit an opportunity",
        alias="MIN_PRICE_IMPACT_BPS"
    )

    opportunity_ttl_seconds: float = Field(
        default=30.0,
        description="Staleness window after which an unconsumed opportunity expires",
        alias="OPPORTUNITY_TTL_SECONDS"
    )

    stale_confidence_factor: float = Field(
        default=0.5,
        description="Confidence multiplier applied when pool state is stale",
        alias="STALE_CONFIDENCE_FACTOR"
    )

    min_pool_liquidity: int = Field(
        default=1000,
        description="Minimum pool liquidity as geometric mean of reserves in whole tokens",
        alias="MIN_POOL_LIQUIDITY"
    )

    min_token_decimals: int = Field(
        default=0,
        description="Lowest plausible token decimals",
        alias="MIN_TOKEN_DECIMALS"
    )

    max_token_decimals: int = Field(
        default=30,
        description="Highest plausible token decimals",
        alias="MAX_TOKEN_DECIMALS"
    )

    max_token_tax_bps: int = Field(
        default=500,
        description="Maximum buy or sell tax (basis points) for a tradable token",
        alias="MAX_TOKEN_TAX_BPS"
    )

    blacklisted_tokens: str = Field(
        default="",
        description="Comma-separated list of token addresses never traded",
        alias="BLACKLISTED_TOKENS"
    )

    max_victim_gas_price_gwei: Dict[str, int] = Field(
        default={"ethereum": 100, "bsc": 20},
        description="Victims bidding above this gas price are skipped as too contested",
        alias="MAX_VICTIM_GAS_PRICE_GWEI"
    )

    # Optimization
    max_position_fraction_bps: int = Field(
        default=3000,
        description="Cap on front-run size as a share of the input reserve",
        alias="MAX_POSITION_FRACTION_BPS"
    )

    search_epsilon_bps: int = Field(
        default=10,
        description="Stop searching when probes differ by less than this share of candidate profit",
        alias="SEARCH_EPSILON_BPS"
    )

    search_max_iterations: int = Field(
        default=20,
        description="Iteration cap for the front-run size search",
        alias="SEARCH_MAX_ITERATIONS"
    )

    gas_units_per_swap: Dict[str, int] = Field(
        default={"ethereum": 150_000, "bsc": 120_000, "solana": 200_000},
        description="Gas (or compute units) consumed by one sandwich leg",
        alias="GAS_UNITS_PER_SWAP"
    )

    gas_premium_bps: int = Field(
        default=2000,
        description="Premium over the observed gas price paid to land the bundle",
        alias="GAS_PREMIUM_BPS"
    )

    min_net_profit_usd: Decimal = Field(
        default=Decimal("10"),
        description="Minimum risk-adjusted net profit in USD",
        alias="MIN_NET_PROFIT_USD"
    )

    risk_confidence_weight_bps: int = Field(
        default=5000,
        description="Weight of (1 - confidence) in the risk score",
        alias="RISK_CONFIDENCE_WEIGHT_BPS"
    )

    risk_depth_weight_bps: int = Field(
        default=2500,
        description="Weight of position depth relative to the cap in the risk score",
        alias="RISK_DEPTH_WEIGHT_BPS"
    )

    risk_volatility_weight_bps: int = Field(
        default=2500,
        description="Weight of gas and price volatility in the risk score",
        alias="RISK_VOLATILITY_WEIGHT_BPS"
    )

    volatility_window: int = Field(
        default=20,
        description="Number of recent gas and price observations used for volatility",
        alias="VOLATILITY_WINDOW"
    )

    rejected_snapshot_capacity: int = Field(
        default=10_000,
        description="Rejected opportunity snapshots remembered by the optimizer",
        alias="REJECTED_SNAPSHOT_CAPACITY"
    )

    # Execution
    reserve_drift_tolerance_bps: int = Field(
        default=500,
        description="Maximum reserve drift between detection and execution",
        alias="RESERVE_DRIFT_TOLERANCE_BPS"
    )

    max_simulation_divergence_bps: int = Field(
        default=1000,
        description="Maximum divergence between simulated and estimated profit",
        alias="MAX_SIMULATION_DIVERGENCE_BPS"
    )

    max_tip_ratio_bps: int = Field(
        default=2000,
        description="Share of net profit offered to the builder",
        alias="MAX_TIP_RATIO_BPS"
    )

    max_absolute_tip: Dict[str, int] = Field(
        default={
            "ethereum": 50_000_000_000_000_000,
            "bsc": 100_000_000_000_000_000,
            "solana": 100_000_000,
        },
        description="Per-chain tip ceiling in native base units (wei, lamports)",
        alias="MAX_ABSOLUTE_TIP"
    )

    swap_slippage_bps: int = Field(
        default=50,
        description="Slippage allowed on our own legs' minimum outputs",
        alias="SWAP_SLIPPAGE_BPS"
    )

    submission_retry_attempts: int = Field(
        default=3,
        description="Attempts for a bundle submission on transport errors",
        alias="SUBMISSION_RETRY_ATTEMPTS"
    )

    submission_retry_backoff_seconds: float = Field(
        default=0.25,
        description="Base delay for exponential submission backoff",
        alias="SUBMISSION_RETRY_BACKOFF_SECONDS"
    )

    inclusion_poll_attempts: int = Field(
        default=5,
        description="Inclusion checks before a bundle is declared expired",
        alias="INCLUSION_POLL_ATTEMPTS"
    )

    inclusion_poll_interval_seconds: float = Field(
        default=2.0,
        description="Delay between inclusion checks",
        alias="INCLUSION_POLL_INTERVAL_SECONDS"
    )

    inclusion_timeout_seconds: float = Field(
        default=60.0,
        description="Overall time bound for inclusion monitoring",
        alias="INCLUSION_TIMEOUT_SECONDS"
    )

    max_inflight_per_wallet: int = Field(
        default=3,
        description="Concurrent executions allowed per (chain, wallet)",
        alias="MAX_INFLIGHT_PER_WALLET"
    )

    consecutive_failure_limit: int = Field(
        default=5,
        description="Consecutive execution failures that trip the emergency stop (0 disables)",
        alias="CONSECUTIVE_FAILURE_LIMIT"
    )

    simulation_only: bool = Field(
        default=False,
        description="Paper trading: simulate bundles but never submit",
        alias="SIMULATION_ONLY"
    )

    executor_contracts: Dict[str, str] = Field(
        default={},
        description="Per-chain address of the executor contract or program",
        alias="EXECUTOR_CONTRACTS"
    )

    solana_token_accounts: Dict[str, str] = Field(
        default={},
        description="Mint -> our SPL token account, read back during Jito simulation",
        alias="SOLANA_TOKEN_ACCOUNTS"
    )

    bundle_block_range: int = Field(
        default=3,
        description="Blocks after the target block a relay may still include the bundle",
        alias="BUNDLE_BLOCK_RANGE"
    )

    # Pipeline
    chain_queue_size: int = Field(
        default=1000,
        description="Pending transactions buffered per chain worker",
        alias="CHAIN_QUEUE_SIZE"
    )

    stats_interval_seconds: float = Field(
        default=30.0,
        description="Interval between execution stats snapshots",
        alias="STATS_INTERVAL_SECONDS"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "populate_by_name": True,
        "extra": "ignore"  # Ignore extra fields from .env
    }

    @property
    def chains(self) -> List[str]:
        """Enabled chain names."""
        return [c.strip().lower() for c in self.enabled_chains.split(",") if c.strip()]

    @property
    def blacklist(self) -> List[str]:
        """Blacklisted token addresses, lower-cased."""
        return [t.strip().lower() for t in self.blacklisted_tokens.split(",") if t.strip()]


# Global settings instance
settings = Settings()
