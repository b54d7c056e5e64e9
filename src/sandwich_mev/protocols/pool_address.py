"""CREATE2 pool address derivation for V2 pairs and V3 pools."""
from typing import Tuple

from eth_abi import encode
from web3 import Web3


def sort_tokens(token_a: str, token_b: str) -> Tuple[str, str]:
    """Order two token addresses the way factories do."""
    a, b = token_a.lower(), token_b.lower()
    if a == b:
        raise ValueError(f"Identical tokens: {a}")
    return (a, b) if int(a, 16) < int(b, 16) else (b, a)


def create2_address(deployer: str, salt: bytes, init_code_hash: str) -> str:
    """Address of a contract deployed with CREATE2, lower-cased."""
    digest = Web3.keccak(
        b"\xff"
        + bytes.fromhex(deployer[2:])
        + salt
        + bytes.fromhex(init_code_hash[2:])
    )
    return "0x" + bytes(digest[12:]).hex()


def v2_pair_address(factory: str, init_code_hash: str, token_a: str, token_b: str) -> str:
    """Pair address for a Uniswap V2 style factory."""
    token0, token1 = sort_tokens(token_a, token_b)
    salt = Web3.keccak(bytes.fromhex(token0[2:]) + bytes.fromhex(token1[2:]))
    return create2_address(factory, bytes(salt), init_code_hash)


def v3_pool_address(deployer: str, init_code_hash: str, token_a: str, token_b: str, fee: int) -> str:
    """Pool address for a Uniswap V3 style deployer and fee tier."""
    token0, token1 = sort_tokens(token_a, token_b)
    salt = Web3.keccak(encode(["address", "address", "uint24"], [token0, token1, fee]))
    return create2_address(deployer, bytes(salt), init_code_hash)
