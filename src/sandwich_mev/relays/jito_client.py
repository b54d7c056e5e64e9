"""
Jito block engine client for Solana.

Bundles are base64-encoded signed transactions. Simulation runs on a
Jito-enabled RPC (``simulateBundle``), and the profit is read from our SPL
token account before the first and after the last transaction.
"""
import base64
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..config.settings import Settings, settings as default_settings
from ..errors import RelayRejectedError
from ..execution.bundle_models import BundleTransaction
from .base_relay import BundleStatusReport, JsonRpcRelayClient, SimulationResult, as_int

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_ENGINE_URL = "https://mainnet.block-engine.jito.wtf/api/v1/bundles"

# SPL token account layout: mint (32) | owner (32) | amount (u64 LE)
TOKEN_AMOUNT_OFFSET = 64

LANDED_STATUSES = ("confirmed", "finalized")


def spl_token_amount(account: Optional[Dict[str, Any]]) -> int:
    """Token amount held by an SPL token account as returned by simulateBundle."""
    if not account:
        return 0
    data = account.get("data")
    encoded = data[0] if isinstance(data, list) else data
    raw = base64.b64decode(encoded or "")
    if len(raw) < TOKEN_AMOUNT_OFFSET + 8:
        return 0
    return int.from_bytes(raw[TOKEN_AMOUNT_OFFSET:TOKEN_AMOUNT_OFFSET + 8], "little")


class JitoClient(JsonRpcRelayClient):
    """Jito ``sendBundle`` / ``getBundleStatuses`` client."""

    def __init__(
        self,
        block_engine_url: str = DEFAULT_BLOCK_ENGINE_URL,
        rpc_url: Optional[str] = None,
        token_accounts: Optional[Dict[str, str]] = None,
        timeout: float = 5.0,
        block_range: int = 3
    ):
        super().__init__(
            "solana", block_engine_url, rpc_url=rpc_url, timeout=timeout, block_range=block_range
        )
        self.token_accounts = dict(token_accounts or {})

    def _encoded(self, transactions: Sequence[BundleTransaction]) -> List[str]:
        encoded = []
        for tx in transactions:
            if tx.raw is None:
                raise RelayRejectedError(
                    f"Jito bundles need raw transactions ({tx.role.value} has none)", chain=self.chain
                )
            encoded.append(base64.b64encode(tx.raw).decode("ascii"))
        return encoded

    async def get_block_number(self) -> int:
        return as_int(await self._rpc_call("getSlot", []))

    async def simulate_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        token: str
    ) -> SimulationResult:
        account = self.token_accounts.get(token)
        if account is None:
            return SimulationResult(success=False, error=f"no token account configured for {token}")

        encoded = self._encoded(transactions)
        last = len(encoded) - 1
        config = {
            "encodedTransactions": encoded,
            "preExecutionAccountsConfigs": [
                {"accountsToReturn": [account], "encoding": "base64"} if i == 0 else None
                for i in range(len(encoded))
            ],
            "postExecutionAccountsConfigs": [
                {"accountsToReturn": [account], "encoding": "base64"} if i == last else None
                for i in range(len(encoded))
            ],
        }
        self.stats["simulations"] += 1
        result = await self._rpc_call("simulateBundle", [config]) or {}
        value = result.get("value") or {}

        if value.get("summary") != "succeeded":
            return SimulationResult(success=False, error=str(value.get("summary", "simulation failed")))

        tx_results = value.get("transactionResults") or []
        if not tx_results:
            return SimulationResult(success=False, error="simulation returned no transaction results")

        before = spl_token_amount((tx_results[0].get("preExecutionAccounts") or [None])[0])
        after = spl_token_amount((tx_results[-1].get("postExecutionAccounts") or [None])[0])
        return SimulationResult(
            success=True,
            resulting_balances={token: after - before},
            gas_used=sum(as_int(r.get("unitsConsumed")) for r in tx_results),
        )

    async def submit_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        target_block: int,
        tip: int
    ) -> str:
        bundle_id = await self._relay_call("sendBundle", [self._encoded(transactions), {"encoding": "base64"}])
        if not bundle_id:
            raise RelayRejectedError("sendBundle returned no bundle id", chain=self.chain)

        self.stats["submissions"] += 1
        logger.info(f"Jito bundle {bundle_id} submitted at slot {target_block} (tip {tip} lamports)")
        return bundle_id

    async def get_bundle_status(
        self,
        submission_id: str,
        transactions: Sequence[BundleTransaction],
        target_block: int
    ) -> BundleStatusReport:
        result = await self._relay_call("getBundleStatuses", [[submission_id]]) or {}
        statuses = result.get("value") or []
        status = statuses[0] if statuses else None

        if status:
            err = status.get("err") or {}
            if "Ok" not in err and err:
                return BundleStatusReport(rejected=True, block_number=status.get("slot"), error=str(err))
            if status.get("confirmation_status") in LANDED_STATUSES:
                return BundleStatusReport(included=True, block_number=status.get("slot"))
            return BundleStatusReport()

        current = await self.get_block_number()
        if current > target_block + self.block_range:
            return BundleStatusReport(expired=True, error=f"not landed by slot {current}")
        return BundleStatusReport()


async def create_jito_client(settings: Optional[Settings] = None) -> JitoClient:
    """Create and initialize a Jito client from settings."""
    settings = settings or default_settings
    client = JitoClient(
        block_engine_url=settings.jito_block_engine_url,
        rpc_url=settings.solana_rpc_url,
        token_accounts=settings.solana_token_accounts,
        timeout=settings.relay_timeout_seconds,
        block_range=settings.bundle_block_range,
    )
    await client.initialize()
    return client
