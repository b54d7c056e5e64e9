"""bloXroute bundle relay for BNB Smart Chain."""
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..config.settings import Settings, settings as default_settings
from ..errors import RelayRejectedError
from ..execution.bundle_models import BundleTransaction
from .base_relay import JsonRpcRelayClient, SimulationResult, as_int

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.blxrbdn.com"


class BloxrouteClient(JsonRpcRelayClient):
    """
    bloXroute ``blxr_simulate_bundle`` / ``blxr_submit_bundle`` client.

    bloXroute only accepts fully signed transactions, so the victim's raw
    transaction must be part of the bundle.
    """

    def __init__(
        self,
        auth_header: str,
        endpoint: str = DEFAULT_ENDPOINT,
        rpc_url: Optional[str] = None,
        profit_account: Optional[str] = None,
        timeout: float = 5.0,
        block_range: int = 3
    ):
        super().__init__(
            "bsc", endpoint, rpc_url=rpc_url, profit_account=profit_account,
            timeout=timeout, block_range=block_range
        )
        self.auth_header = auth_header

    def _relay_headers(self, body: str) -> Dict[str, str]:
        return {"Authorization": self.auth_header}

    def _raw_transactions(self, transactions: Sequence[BundleTransaction]) -> List[str]:
        raws = []
        for tx in transactions:
            if tx.raw is None:
                raise RelayRejectedError(
                    f"bloXroute bundles need raw transactions ({tx.role.value} has none)", chain=self.chain
                )
            raws.append(tx.raw.hex())
        return raws

    async def simulate_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        token: str
    ) -> SimulationResult:
        target = await self.get_block_number() + 1
        self.stats["simulations"] += 1
        result = await self._relay_call("blxr_simulate_bundle", {
            "transaction": self._raw_transactions(transactions),
            "block_number": hex(target),
            "blockchain_network": "BSC-Mainnet",
        }) or {}

        tx_logs: List[Dict[str, Any]] = []
        for tx_result in result.get("results") or []:
            if tx_result.get("error") or tx_result.get("revert"):
                reason = tx_result.get("revert") or tx_result.get("error")
                return SimulationResult(success=False, error=f"{tx_result.get('txHash', '?')}: {reason}")
            tx_logs.extend(tx_result.get("logs") or [])

        return SimulationResult(
            success=True,
            resulting_balances=self._deltas_from_logs(tx_logs),
            gas_used=as_int(result.get("totalGasUsed")),
        )

    async def submit_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        target_block: int,
        tip: int
    ) -> str:
        result = await self._relay_call("blxr_submit_bundle", {
            "transaction": self._raw_transactions(transactions),
            "block_number": hex(target_block),
            "blockchain_network": "BSC-Mainnet",
            "mev_builders": {"all": ""},
        }) or {}
        bundle_hash = result.get("bundleHash")
        if not bundle_hash:
            raise RelayRejectedError("blxr_submit_bundle returned no bundle hash", chain=self.chain)

        self.stats["submissions"] += 1
        logger.info(f"bloXroute bundle {bundle_hash} submitted for block {target_block} (tip {tip} wei)")
        return bundle_hash


async def create_bloxroute_client(
    settings: Optional[Settings] = None,
    profit_account: Optional[str] = None
) -> BloxrouteClient:
    """Create and initialize a bloXroute client from settings."""
    settings = settings or default_settings
    if not settings.bloxroute_auth_header:
        raise ValueError("BLOXROUTE_AUTH_HEADER is required for the BSC relay")

    client = BloxrouteClient(
        settings.bloxroute_auth_header,
        endpoint=settings.bloxroute_endpoint,
        rpc_url=settings.bsc_rpc_url,
        profit_account=profit_account or settings.executor_contracts.get("bsc"),
        timeout=settings.relay_timeout_seconds,
        block_range=settings.bundle_block_range,
    )
    await client.initialize()
    return client
