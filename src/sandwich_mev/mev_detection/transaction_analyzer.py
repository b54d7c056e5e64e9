"""
Transaction Analyzer for sandwich detection.

Decodes pending router calls into ``DecodedSwap`` records: Uniswap V2 style
routers, Uniswap V3 style routers and the Orca Whirlpool swap instruction.
Anything else raises ``DecodeError``.
"""
import hashlib
import logging
import struct
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from ..chains import CHAINS
from ..errors import DecodeError
from ..protocols.pool_address import v2_pair_address, v3_pool_address
from .opportunity_models import DecodedSwap, PendingTransaction, PoolKind
from .router_registry import RouterRegistry, RouterSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapFunction:
    """An exact-input router function the analyzer can decode."""
    name: str
    arg_types: Tuple[str, ...]
    pool_kind: PoolKind
    native_in: bool = False
    native_out: bool = False

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.arg_types)})"

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature)[:4])


V3_EXACT_INPUT_SINGLE = "(address,address,uint24,address,uint256,uint256,uint256,uint160)"
V3_EXACT_INPUT = "(bytes,address,uint256,uint256,uint256)"

SWAP_FUNCTIONS: Tuple[SwapFunction, ...] = (
    # Uniswap V2 Router and forks
    SwapFunction("swapExactTokensForTokens",
                 ("uint256", "uint256", "address[]", "address", "uint256"), PoolKind.CONSTANT_PRODUCT),
    SwapFunction("swapExactETHForTokens",
                 ("uint256", "address[]", "address", "uint256"), PoolKind.CONSTANT_PRODUCT, native_in=True),
    SwapFunction("swapExactTokensForETH",
                 ("uint256", "uint256", "address[]", "address", "uint256"), PoolKind.CONSTANT_PRODUCT,
                 native_out=True),
    SwapFunction("swapExactTokensForTokensSupportingFeeOnTransferTokens",
                 ("uint256", "uint256", "address[]", "address", "uint256"), PoolKind.CONSTANT_PRODUCT),
    SwapFunction("swapExactETHForTokensSupportingFeeOnTransferTokens",
                 ("uint256", "address[]", "address", "uint256"), PoolKind.CONSTANT_PRODUCT, native_in=True),
    SwapFunction("swapExactTokensForETHSupportingFeeOnTransferTokens",
                 ("uint256", "uint256", "address[]", "address", "uint256"), PoolKind.CONSTANT_PRODUCT,
                 native_out=True),
    # Uniswap V3 SwapRouter and forks
    SwapFunction("exactInputSingle", (V3_EXACT_INPUT_SINGLE,), PoolKind.CONCENTRATED),
    SwapFunction("exactInput", (V3_EXACT_INPUT,), PoolKind.CONCENTRATED),
)

# Anchor instruction discriminator for Whirlpool `swap`
WHIRLPOOL_SWAP_DISCRIMINATOR = hashlib.sha256(b"global:swap").digest()[:8]
WHIRLPOOL_SWAP_LAYOUT = struct.Struct("<QQ16s??")
WHIRLPOOL_POOL_ACCOUNT_INDEX = 2


def decode_v3_path(path: bytes) -> Tuple[List[str], List[int]]:
    """
    Split a packed V3 path into tokens and fee tiers.

    Layout: token (20 bytes) followed by repeated fee (3 bytes) + token (20 bytes).
    """
    if len(path) < 43 or (len(path) - 20) % 23 != 0:
        raise DecodeError(f"Malformed V3 path of {len(path)} bytes")

    tokens = ["0x" + path[0:20].hex()]
    fees = []
    offset = 20
    while offset < len(path):
        fees.append(int.from_bytes(path[offset:offset + 3], "big"))
        tokens.append("0x" + path[offset + 3:offset + 23].hex())
        offset += 23
    return tokens, fees


class TransactionAnalyzer:
    """
    Decodes swap calldata against the router registry.

    The analyzer is stateless apart from its counters and safe to share
    between chain workers.
    """

    def __init__(self, registry: Optional[RouterRegistry] = None):
        self.registry = registry or RouterRegistry()
        self.functions: Dict[bytes, SwapFunction] = {fn.selector: fn for fn in SWAP_FUNCTIONS}
        self._decoders: Dict[PoolKind, Callable[[PendingTransaction, RouterSpec], DecodedSwap]] = {
            PoolKind.CONSTANT_PRODUCT: self._decode_evm,
            PoolKind.CONCENTRATED: self._decode_evm,
            PoolKind.WHIRLPOOL: self._decode_whirlpool,
        }
        self.stats = {
            "transactions_analyzed": 0,
            "swaps_decoded": 0,
            "unknown_router": 0,
            "malformed_calldata": 0,
        }

    def decode(self, tx: PendingTransaction) -> DecodedSwap:
        """
        Decode a pending transaction into swap parameters.

        Raises:
            DecodeError: the target is not a known router or the calldata
                is not a supported exact-input swap
        """
        self.stats["transactions_analyzed"] += 1

        if tx.chain not in CHAINS:
            self.stats["unknown_router"] += 1
            raise DecodeError(f"Unsupported chain {tx.chain}", chain=tx.chain)

        router = self.registry.lookup(tx.chain, tx.to)
        if router is None:
            self.stats["unknown_router"] += 1
            raise DecodeError(f"{tx.to} is not a known router", chain=tx.chain)

        try:
            swap = self._decoders[router.pool_kind](tx, router)
        except DecodeError:
            self.stats["malformed_calldata"] += 1
            raise
        except (DecodingError, ValueError, TypeError, struct.error) as e:
            self.stats["malformed_calldata"] += 1
            raise DecodeError(f"Calldata for {router.name} failed to decode: {e}", chain=tx.chain) from e

        self.stats["swaps_decoded"] += 1
        return swap

    def _decode_evm(self, tx: PendingTransaction, router: RouterSpec) -> DecodedSwap:
        fn = self.functions.get(tx.selector)
        if fn is None or fn.pool_kind != router.pool_kind:
            raise DecodeError(f"Unsupported selector 0x{tx.selector.hex()} on {router.name}", chain=tx.chain)

        args = decode(list(fn.arg_types), tx.data[4:])
        if fn.pool_kind == PoolKind.CONSTANT_PRODUCT:
            return self._v2_swap(tx, router, fn, args)
        return self._v3_swap(tx, router, fn, args)

    def _v2_swap(self, tx: PendingTransaction, router: RouterSpec, fn: SwapFunction, args: Tuple[Any, ...]) -> DecodedSwap:
        if fn.native_in:
            amount_out_min, path, recipient, deadline = args
            amount_in = tx.value
        else:
            amount_in, amount_out_min, path, recipient, deadline = args

        path = tuple(token.lower() for token in path)
        if len(path) < 2:
            raise DecodeError(f"{fn.name} path too short", chain=tx.chain)

        pool = v2_pair_address(router.factory, router.init_code_hash, path[0], path[1])
        return DecodedSwap(
            protocol=router.protocol,
            pool_kind=router.pool_kind,
            router=router.address,
            function_name=fn.name,
            path=path,
            amount_in=amount_in,
            amount_out_min=amount_out_min,
            deadline=deadline,
            recipient=recipient.lower(),
            pool_address=pool,
            native_in=fn.native_in,
            native_out=fn.native_out,
        )

    def _v3_swap(self, tx: PendingTransaction, router: RouterSpec, fn: SwapFunction, args: Tuple[Any, ...]) -> DecodedSwap:
        (params,) = args
        if fn.name == "exactInputSingle":
            token_in, token_out, fee, recipient, deadline, amount_in, amount_out_min, _ = params
            tokens, fees = [token_in.lower(), token_out.lower()], [fee]
        else:
            path_bytes, recipient, deadline, amount_in, amount_out_min = params
            tokens, fees = decode_v3_path(path_bytes)

        pool = v3_pool_address(router.factory, router.init_code_hash, tokens[0], tokens[1], fees[0])
        return DecodedSwap(
            protocol=router.protocol,
            pool_kind=router.pool_kind,
            router=router.address,
            function_name=fn.name,
            path=tuple(tokens),
            amount_in=amount_in,
            amount_out_min=amount_out_min,
            fee_tier=fees[0],
            deadline=deadline,
            recipient=recipient.lower(),
            pool_address=pool,
            native_in=tx.value > 0,
        )

    def _decode_whirlpool(self, tx: PendingTransaction, router: RouterSpec) -> DecodedSwap:
        data = tx.data
        if data[:8] != WHIRLPOOL_SWAP_DISCRIMINATOR:
            raise DecodeError("Not a Whirlpool swap instruction", chain=tx.chain)
        if len(tx.accounts) <= WHIRLPOOL_POOL_ACCOUNT_INDEX:
            raise DecodeError("Whirlpool swap is missing its pool account", chain=tx.chain)

        amount, threshold, _sqrt_price_limit, amount_is_input, a_to_b = WHIRLPOOL_SWAP_LAYOUT.unpack_from(data, 8)
        if not amount_is_input:
            raise DecodeError("Exact-output Whirlpool swaps are not sandwiched", chain=tx.chain)

        # Token route is resolved from the pool by the detector
        return DecodedSwap(
            protocol=router.protocol,
            pool_kind=router.pool_kind,
            router=router.address,
            function_name="swap",
            amount_in=amount,
            amount_out_min=threshold,
            recipient=tx.sender,
            pool_address=tx.accounts[WHIRLPOOL_POOL_ACCOUNT_INDEX],
            a_to_b=a_to_b,
        )

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)


def create_transaction_analyzer(registry: Optional[RouterRegistry] = None) -> TransactionAnalyzer:
    """Convenience function to create an analyzer with the default routers."""
    return TransactionAnalyzer(registry)
