"""Known swap routers per chain, with the factory data needed to locate pools."""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..chains import normalize_address
from .opportunity_models import DexProtocol, PoolKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterSpec:
    """A router (or program) whose swaps can be decoded."""
    chain: str
    address: str
    protocol: DexProtocol
    pool_kind: PoolKind
    name: str
    factory: Optional[str] = None           # V2 factory or V3 pool deployer
    init_code_hash: Optional[str] = None
    fee_bps: int = 30                        # default for constant product pools


DEFAULT_ROUTERS: Tuple[RouterSpec, ...] = (
    # Ethereum
    RouterSpec(
        chain="ethereum",
        address="0x7a250d5630b4cf539739df2c5dacb4c659f2488d",
        protocol=DexProtocol.UNISWAP_V2,
        pool_kind=PoolKind.CONSTANT_PRODUCT,
        name="UniswapV2Router02",
        factory="0x5c69bee701ef814a2b6a3edd4b1652cb9cc5aa6f",
        init_code_hash="0x96e8ac4277198ff8b6f785478aa9a39f403cb768dd02cbee326c3e7da348845f",
        fee_bps=30,
    ),
    RouterSpec(
        chain="ethereum",
        address="0xd9e1ce17f2641f24ae83637ab66a2cca9c378b9f",
        protocol=DexProtocol.SUSHISWAP,
        pool_kind=PoolKind.CONSTANT_PRODUCT,
        name="SushiSwapRouter",
        factory="0xc0aee478e3658e2610c5f7a4a2e1777ce9e4f2ac",
        init_code_hash="0xe18a34eb0e04b04f7a0ac29a6e80748dca96319b42c520bfb000c8a6b4a1a2da",
        fee_bps=30,
    ),
    RouterSpec(
        chain="ethereum",
        address="0xe592427a0aece92de3edee1f18e0157c05861564",
        protocol=DexProtocol.UNISWAP_V3,
        pool_kind=PoolKind.CONCENTRATED,
        name="UniswapV3SwapRouter",
        factory="0x1f98431c8ad98523631ae4a59f267346ea31f984",
        init_code_hash="0xe34f199b19b2b4f47f68442619d555527d244f78a3297ea89325f843f87b8b54",
    ),
    # BSC
    RouterSpec(
        chain="bsc",
        address="0x10ed43c718714eb63d5aa57b78b54704e256024e",
        protocol=DexProtocol.PANCAKESWAP_V2,
        pool_kind=PoolKind.CONSTANT_PRODUCT,
        name="PancakeRouterV2",
        factory="0xca143ce32fe78f1f7019d7d551a6402fc5350c73",
        init_code_hash="0x00fb7f630766e6a796048ea87d01acd3068e8ff67d078148a3fa3f4a84f69bd5",
        fee_bps=25,
    ),
    RouterSpec(
        chain="bsc",
        address="0x1b81d678ffb9c0263b24a97847620c99d213eb14",
        protocol=DexProtocol.PANCAKESWAP_V3,
        pool_kind=PoolKind.CONCENTRATED,
        name="PancakeV3SwapRouter",
        factory="0x41ff9aa7e16b8b1a8a8dc4f0efacd93d02d071c9",
        init_code_hash="0x6ce8eb472fa82df5469c6ab6d485f17c3ad13c8cd7af59b3d4a8026c5ce0f7e2",
    ),
    # Solana
    RouterSpec(
        chain="solana",
        address="whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
        protocol=DexProtocol.ORCA_WHIRLPOOL,
        pool_kind=PoolKind.WHIRLPOOL,
        name="OrcaWhirlpool",
    ),
)


class RouterRegistry:
    """Lookup of decodable routers keyed by (chain, address)."""

    def __init__(self, routers: Optional[Iterable[RouterSpec]] = None):
        self._routers: Dict[Tuple[str, str], RouterSpec] = {}
        for router in (DEFAULT_ROUTERS if routers is None else routers):
            self.register(router)

    def register(self, router: RouterSpec) -> None:
        key = (router.chain, normalize_address(router.chain, router.address))
        if key in self._routers:
            logger.warning(f"Replacing router {router.name} at {router.address} on {router.chain}")
        self._routers[key] = router

    def lookup(self, chain: str, address: str) -> Optional[RouterSpec]:
        return self._routers.get((chain, normalize_address(chain, address)))

    def routers_for_chain(self, chain: str) -> List[RouterSpec]:
        return [router for (c, _), router in self._routers.items() if c == chain]

    def __len__(self) -> int:
        return len(self._routers)
