"""
Interfaces for the external collaborators of the pipeline.

Metadata, prices, signing and mempool state live outside this package; the
pipeline only depends on these abstract contracts.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .execution.bundle_models import UnsignedTransaction


@dataclass(frozen=True)
class PoolInfo:
    """Pool metadata and reserves as reported by the metadata provider."""
    address: str
    token0: str
    token1: str
    reserve0: int
    reserve1: int
    fee_bps: int
    block_number: int = 0


@dataclass(frozen=True)
class TokenInfo:
    """Token metadata used by the quality gate."""
    address: str
    decimals: int
    blacklisted: bool = False
    symbol: str = ""
    honeypot: bool = False
    buy_tax_bps: int = 0
    sell_tax_bps: int = 0
    verified: bool = True


class MetadataProvider(ABC):
    """Source of pool reserves and token metadata."""

    @abstractmethod
    async def get_pool(self, chain: str, address: str) -> PoolInfo:
        """Return the current state of a pool."""
        pass

    @abstractmethod
    async def get_token(self, chain: str, address: str) -> TokenInfo:
        """Return token metadata."""
        pass


class PriceFeed(ABC):
    """USD price source for native assets and tokens."""

    @abstractmethod
    async def get_usd_price(self, asset: str) -> Decimal:
        """Return the USD price of one whole unit of ``asset``."""
        pass


class TransactionSigner(ABC):
    """Signing service. Keys never enter this package."""

    @abstractmethod
    def wallet_address(self, chain: str) -> str:
        """Address of the wallet used on ``chain``."""
        pass

    @abstractmethod
    async def get_next_nonce(self, wallet: str, chain: str) -> int:
        """Next nonce for ``wallet``; only called inside the signing critical section."""
        pass

    @abstractmethod
    async def sign(self, tx: "UnsignedTransaction") -> bytes:
        """Sign and serialize a transaction."""
        pass


class MempoolView(ABC):
    """Read access to the pending transaction pool."""

    @abstractmethod
    async def is_pending(self, chain: str, tx_hash: str) -> bool:
        """Whether the transaction is still pending."""
        pass


class GasPriceOracle(ABC):
    """Current network fee level per chain."""

    @abstractmethod
    async def get_gas_price(self, chain: str) -> int:
        """Gas price in wei, or the priority fee in micro-lamports per compute unit on Solana."""
        pass
