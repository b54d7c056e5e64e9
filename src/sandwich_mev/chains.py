"""Chain registry: families, native assets and wrapped native tokens."""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ChainFamily(str, Enum):
    """Transaction model families."""
    EVM = "evm"
    SOLANA = "solana"


@dataclass(frozen=True)
class ChainConfig:
    """Static per-chain facts."""
    name: str
    family: ChainFamily
    native_symbol: str
    native_decimals: int
    wrapped_native: str
    chain_id: Optional[int] = None


CHAINS: Dict[str, ChainConfig] = {
    "ethereum": ChainConfig(
        name="ethereum",
        family=ChainFamily.EVM,
        native_symbol="ETH",
        native_decimals=18,
        wrapped_native="0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
        chain_id=1,
    ),
    "bsc": ChainConfig(
        name="bsc",
        family=ChainFamily.EVM,
        native_symbol="BNB",
        native_decimals=18,
        wrapped_native="0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",
        chain_id=56,
    ),
    "solana": ChainConfig(
        name="solana",
        family=ChainFamily.SOLANA,
        native_symbol="SOL",
        native_decimals=9,
        wrapped_native="So11111111111111111111111111111111111111112",
    ),
}


def get_chain(name: str) -> ChainConfig:
    """Look up a chain by name, raising KeyError for unsupported chains."""
    try:
        return CHAINS[name.lower()]
    except KeyError:
        raise KeyError(f"Unsupported chain: {name}") from None


def normalize_address(chain: str, address: str) -> str:
    """EVM addresses compare lower-cased; Solana base58 keys are case-sensitive."""
    if get_chain(chain).family == ChainFamily.EVM:
        return address.lower()
    return address
