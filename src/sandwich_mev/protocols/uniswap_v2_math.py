"""
Constant product math in integer base units.

Implements the x * y = k swap formula used by Uniswap V2 and its forks
(SushiSwap, PancakeSwap) and the three-leg sandwich sequence built on it.
Every division floors, so outputs are never overstated.
"""
import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BPS = 10_000


@dataclass(frozen=True)
class SandwichLegs:
    """Outcome of front-run, victim and back-run against one pool."""
    front_run_in: int
    front_run_out: int
    victim_out: int
    back_run_out: int
    reserve_in_after: int
    reserve_out_after: int

    @property
    def gross_profit(self) -> int:
        """Token-in gained by the attacker, negative on a loss."""
        return self.back_run_out - self.front_run_in


class UniswapV2Math:
    """
    Exact integer implementation of constant product AMM math.

    The fee is expressed in basis points (30 = 0.3%).
    """

    def __init__(self, fee_bps: int = 30):
        if not 0 <= fee_bps < BPS:
            raise ValueError(f"fee_bps out of range: {fee_bps}")
        self.fee_bps = fee_bps

    def calculate_amount_out(self, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        """
        Output amount for ``amount_in`` of the input token.

        Formula: amountOut = amountIn * (10000 - fee) * reserveOut /
                             (reserveIn * 10000 + amountIn * (10000 - fee))

        The result is strictly below ``reserve_out`` for any finite input.
        """
        if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
            return 0

        amount_in_with_fee = amount_in * (BPS - self.fee_bps)
        numerator = amount_in_with_fee * reserve_out
        denominator = reserve_in * BPS + amount_in_with_fee
        return numerator // denominator

    def calculate_amount_in(self, amount_out: int, reserve_in: int, reserve_out: int) -> int:
        """
        Input required to receive ``amount_out``; rounds up.

        Raises:
            ValueError: if the pool cannot provide ``amount_out``
        """
        if amount_out <= 0:
            return 0
        if reserve_in <= 0 or amount_out >= reserve_out:
            raise ValueError(f"Pool cannot provide {amount_out} (reserve {reserve_out})")

        numerator = reserve_in * amount_out * BPS
        denominator = (reserve_out - amount_out) * (BPS - self.fee_bps)
        return numerator // denominator + 1

    def calculate_price_impact_bps(self, amount_in: int, reserve_in: int, reserve_out: int) -> int:
        """
        Price impact of a trade in basis points.

        Measured as the shortfall of the actual output against the output at
        the pre-trade spot price, fee included.
        """
        if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
            return 0

        ideal_out = amount_in * reserve_out // reserve_in
        if ideal_out == 0:
            return 0
        amount_out = self.calculate_amount_out(amount_in, reserve_in, reserve_out)
        return (ideal_out - amount_out) * BPS // ideal_out

    def simulate_sandwich(
        self,
        front_run_in: int,
        victim_in: int,
        reserve_in: int,
        reserve_out: int
    ) -> SandwichLegs:
        """
        Run front-run, victim and back-run in sequence.

        The front-run buys with ``front_run_in`` of the input token, the victim
        then swaps ``victim_in`` on the shifted pool, and the back-run sells
        the entire front-run output back into the input token.
        """
        front_out = self.calculate_amount_out(front_run_in, reserve_in, reserve_out)
        r_in = reserve_in + max(front_run_in, 0)
        r_out = reserve_out - front_out

        victim_out = self.calculate_amount_out(victim_in, r_in, r_out)
        r_in += victim_in
        r_out -= victim_out

        back_out = self.calculate_amount_out(front_out, r_out, r_in)
        return SandwichLegs(
            front_run_in=front_run_in,
            front_run_out=front_out,
            victim_out=victim_out,
            back_run_out=back_out,
            reserve_in_after=r_in - back_out,
            reserve_out_after=r_out + front_out,
        )

    def max_front_run_for_victim(
        self,
        victim_in: int,
        victim_min_out: int,
        reserve_in: int,
        reserve_out: int,
        upper_bound: int
    ) -> int:
        """
        Largest front-run that still lets the victim receive ``victim_min_out``.

        Victim output falls monotonically as the front-run grows, so an integer
        binary search over ``[0, upper_bound]`` finds the boundary exactly.
        Returns -1 when the victim would fail even without a front-run.
        """
        if self.calculate_amount_out(victim_in, reserve_in, reserve_out) < victim_min_out:
            return -1

        lo, hi = 0, max(upper_bound, 0)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            front_out = self.calculate_amount_out(mid, reserve_in, reserve_out)
            victim_out = self.calculate_amount_out(victim_in, reserve_in + mid, reserve_out - front_out)
            if victim_out >= victim_min_out:
                lo = mid
            else:
                hi = mid - 1
        return lo


def liquidity_in_whole_tokens(reserve0: int, reserve1: int, decimals0: int, decimals1: int) -> int:
    """Geometric mean of the reserves expressed in whole tokens."""
    if reserve0 <= 0 or reserve1 <= 0:
        return 0
    return math.isqrt(reserve0 * reserve1 // 10 ** (decimals0 + decimals1))
