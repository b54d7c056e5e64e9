"""
Relay client interface and the shared JSON-RPC transport.

Transport failures (connection errors, timeouts, 429/5xx) surface as
``SubmissionError`` and are retried by the orchestrator. An answer in which
the relay refuses the request surfaces as ``RelayRejectedError``.
"""
import asyncio
import itertools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiohttp
from web3 import Web3

from ..errors import RelayRejectedError, SubmissionError
from ..execution.bundle_models import BundleTransaction, TransactionRole

logger = logging.getLogger(__name__)

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass
class SimulationResult:
    """Outcome of a relay-side bundle simulation."""
    success: bool
    resulting_balances: Dict[str, int] = field(default_factory=dict)  # token -> balance delta of the profit account
    gas_used: int = 0
    error: Optional[str] = None


@dataclass
class BundleStatusReport:
    """One inclusion check."""
    included: bool = False
    rejected: bool = False
    expired: bool = False
    block_number: Optional[int] = None
    error: Optional[str] = None


class RelayClient(ABC):
    """A private bundle relay for one chain."""

    chain: str = ""

    @abstractmethod
    async def simulate_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        token: str
    ) -> SimulationResult:
        """Simulate the ordered bundle and report the profit account's change in ``token``."""
        pass

    @abstractmethod
    async def submit_bundle(
        self,
        transactions: Sequence[BundleTransaction],
        target_block: int,
        tip: int
    ) -> str:
        """Submit the ordered bundle; returns the relay's submission id."""
        pass

    @abstractmethod
    async def get_bundle_status(
        self,
        submission_id: str,
        transactions: Sequence[BundleTransaction],
        target_block: int
    ) -> BundleStatusReport:
        """Check whether a submitted bundle has landed."""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current block (or slot) height."""
        pass

    async def close(self):
        """Release network resources."""
        pass


def tx_hex(raw: bytes) -> str:
    return "0x" + raw.hex()


def as_int(value: Any) -> int:
    """Parse a JSON-RPC quantity given as hex string, decimal string or number."""
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def back_run_hash(transactions: Iterable[BundleTransaction]) -> Optional[str]:
    for tx in transactions:
        if tx.role == TransactionRole.BACK_RUN:
            return tx.tx_hash
    return None


def parse_transfer_deltas(logs: Iterable[Dict[str, Any]], account: str) -> Dict[str, int]:
    """
    Net ERC20 balance change of ``account`` per token from Transfer logs.

    Token addresses are lower-cased.
    """
    account = account.lower()
    deltas: Dict[str, int] = {}
    for log in logs:
        topics = [t.lower() if isinstance(t, str) else Web3.to_hex(t) for t in log.get("topics", [])]
        if len(topics) != 3 or topics[0] != TRANSFER_TOPIC:
            continue
        token = log.get("address", "").lower()
        sender = "0x" + topics[1][-40:]
        recipient = "0x" + topics[2][-40:]
        data = log.get("data") or "0x0"
        value = int(data, 16) if isinstance(data, str) else int.from_bytes(data, "big")
        if recipient == account:
            deltas[token] = deltas.get(token, 0) + value
        if sender == account:
            deltas[token] = deltas.get(token, 0) - value
    return deltas


class JsonRpcRelayClient(RelayClient):
    """
    aiohttp JSON-RPC transport shared by the EVM relays.

    Inclusion is read from the chain itself: the bundle landed once the
    back-run has a receipt, and was rejected if that receipt reverted.
    """

    def __init__(
        self,
        chain: str,
        relay_url: str,
        rpc_url: Optional[str] = None,
        profit_account: Optional[str] = None,
        timeout: float = 5.0,
        block_range: int = 3
    ):
        self.chain = chain
        self.relay_url = relay_url
        self.rpc_url = rpc_url or relay_url
        self.profit_account = profit_account
        self.timeout = timeout
        self.block_range = block_range

        self.session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

        self.stats = {
            "simulations": 0,
            "submissions": 0,
            "rejections": 0,
            "transport_errors": 0,
        }

    async def initialize(self):
        """Open the HTTP session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Content-Type": "application/json"}
            )
            logger.info(f"{type(self).__name__} initialized for {self.chain}")

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _relay_headers(self, body: str) -> Dict[str, str]:
        """Authentication headers for relay calls."""
        return {}

    async def _relay_call(self, method: str, params: Any) -> Any:
        return await self._post(self.relay_url, method, params, authenticated=True)

    async def _rpc_call(self, method: str, params: Any) -> Any:
        return await self._post(self.rpc_url, method, params, authenticated=False)

    async def _post(self, url: str, method: str, params: Any, authenticated: bool) -> Any:
        if self.session is None:
            await self.initialize()

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        body = json.dumps(payload)
        headers = self._relay_headers(body) if authenticated else {}

        try:
            async with self.session.post(url, data=body, headers=headers) as response:
                text = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats["transport_errors"] += 1
            raise SubmissionError(f"{method} transport failure: {e!r}", chain=self.chain)

        if status == 429 or status >= 500:
            self.stats["transport_errors"] += 1
            raise SubmissionError(f"{method} HTTP {status}: {text[:200]}", chain=self.chain)
        if status != 200:
            self.stats["rejections"] += 1
            raise RelayRejectedError(f"{method} HTTP {status}: {text[:200]}", chain=self.chain)

        try:
            data = json.loads(text)
        except ValueError:
            self.stats["transport_errors"] += 1
            raise SubmissionError(f"{method} returned invalid JSON", chain=self.chain)

        if data.get("error"):
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            self.stats["rejections"] += 1
            raise RelayRejectedError(f"{method}: {message}", chain=self.chain)
        return data.get("result")

    async def get_block_number(self) -> int:
        result = await self._rpc_call("eth_blockNumber", [])
        return as_int(result)

    async def get_bundle_status(
        self,
        submission_id: str,
        transactions: Sequence[BundleTransaction],
        target_block: int
    ) -> BundleStatusReport:
        tx_hash = back_run_hash(transactions)
        if tx_hash is None:
            return BundleStatusReport(rejected=True, error="bundle has no back-run")

        receipt = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if receipt:
            block = as_int(receipt["blockNumber"])
            if as_int(receipt.get("status", "0x1")) == 1:
                return BundleStatusReport(included=True, block_number=block)
            return BundleStatusReport(rejected=True, block_number=block, error="back-run reverted")

        current = await self.get_block_number()
        if current > target_block + self.block_range:
            return BundleStatusReport(expired=True, error=f"not included by block {current}")
        return BundleStatusReport()

    def _deltas_from_logs(self, tx_logs: List[Dict[str, Any]]) -> Dict[str, int]:
        if not self.profit_account:
            return {}
        return parse_transfer_deltas(tx_logs, self.profit_account)

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
