"""
Sandwich Profit Optimizer.

Finds the front-run size that maximizes attacker profit on a constant
product pool, subject to the victim still clearing its minimum output, then
prices gas and risk to produce a ``ProfitEstimate``.

The AMM model and the search use integers only; Decimal appears only where
amounts are converted to USD.
"""
import logging
from collections import OrderedDict
from decimal import Decimal, ROUND_CEILING
from typing import Optional, Tuple

from ..chains import get_chain
from ..config.settings import Settings, settings as default_settings
from ..errors import InsufficientProfitError
from ..events import EventDispatcher, EventType, ExecutionStats
from ..interfaces import PriceFeed
from ..mev_detection.opportunity_models import ProfitEstimate, SandwichOpportunity
from ..protocols.uniswap_v2_math import BPS, SandwichLegs, UniswapV2Math
from .gas_model import GasModel
from .risk_model import RiskModel

logger = logging.getLogger(__name__)

OPTIMIZATION_STAGE = "optimization"


class ProfitOptimizer:
    """
    Sizes sandwiches and decides whether they are worth executing.

    An opportunity rejected against a given reserves snapshot is remembered
    and not evaluated again until different reserves are supplied.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        settings: Optional[Settings] = None,
        gas_model: Optional[GasModel] = None,
        risk_model: Optional[RiskModel] = None,
        stats: Optional[ExecutionStats] = None,
        events: Optional[EventDispatcher] = None
    ):
        self.price_feed = price_feed
        self.settings = settings or default_settings
        self.gas_model = gas_model or GasModel(self.settings)
        self.risk_model = risk_model or RiskModel(self.settings)
        self.stats = stats or ExecutionStats()
        self.events = events or EventDispatcher()

        self._rejected: "OrderedDict[Tuple[str, str, str, int, int], str]" = OrderedDict()

    async def optimize(
        self,
        opportunity: SandwichOpportunity,
        reserve_in: int,
        reserve_out: int,
        gas_price: int
    ) -> Optional[ProfitEstimate]:
        """
        Compute the optimal front-run and its risk-adjusted profit.

        Args:
            opportunity: Detected opportunity
            reserve_in: Current reserve of the victim's input token
            reserve_out: Current reserve of the victim's output token
            gas_price: Current gas price (wei, or micro-lamports per CU)

        Returns:
            ProfitEstimate, or None when no size clears the profit threshold
        """
        key = opportunity.victim_key + (reserve_in, reserve_out)
        if key in self._rejected:
            self.stats.record_rejection(OPTIMIZATION_STAGE, "already_rejected")
            logger.debug(f"{opportunity.opportunity_id} already rejected at these reserves")
            return None

        self.gas_model.observe(opportunity.chain, gas_price)

        try:
            estimate = await self._evaluate(opportunity, reserve_in, reserve_out, gas_price)
        except InsufficientProfitError as e:
            self._remember_rejection(key, str(e))
            self.stats.record_rejection(OPTIMIZATION_STAGE, "insufficient_profit")
            logger.debug(f"No profitable size for {opportunity.opportunity_id}: {e}")
            return None

        self.stats.increment("profit_estimates")
        logger.info(
            f"Profit estimate for {opportunity.opportunity_id}: front-run {estimate.front_run_amount}, "
            f"net ${estimate.net_profit_usd:.2f}, risk {estimate.risk_score:.2%}, "
            f"adjusted ${estimate.risk_adjusted_profit_usd:.2f}"
        )
        self.events.emit(
            EventType.PROFIT_ESTIMATED,
            chain=opportunity.chain,
            opportunity_id=opportunity.opportunity_id,
            front_run_amount=estimate.front_run_amount,
            net_profit_usd=str(estimate.net_profit_usd),
            risk_score=estimate.risk_score,
        )
        return estimate

    async def _evaluate(
        self,
        opportunity: SandwichOpportunity,
        reserve_in: int,
        reserve_out: int,
        gas_price: int
    ) -> ProfitEstimate:
        if reserve_in <= 0 or reserve_out <= 0:
            raise InsufficientProfitError("Empty pool", chain=opportunity.chain,
                                          opportunity_id=opportunity.opportunity_id)

        math = UniswapV2Math(opportunity.fee_bps)
        victim_in = opportunity.swap.amount_in

        max_position = self.max_position(math, opportunity, reserve_in, reserve_out)
        if max_position <= 0:
            raise InsufficientProfitError("No room to front-run without reverting the victim",
                                          chain=opportunity.chain, opportunity_id=opportunity.opportunity_id)

        legs, iterations = self.search_optimal_front_run(math, victim_in, reserve_in, reserve_out, max_position)
        if legs.gross_profit <= 0:
            raise InsufficientProfitError("Sandwich is unprofitable before gas",
                                          chain=opportunity.chain, opportunity_id=opportunity.opportunity_id)

        chain = get_chain(opportunity.chain)
        gas = self.gas_model.estimate(opportunity.chain, gas_price)
        native_usd = await self.price_feed.get_usd_price(chain.native_symbol)
        token_usd = await self.price_feed.get_usd_price(opportunity.token_in)
        if native_usd <= 0 or token_usd <= 0:
            raise InsufficientProfitError("Price feed returned a non-positive price",
                                          chain=opportunity.chain, opportunity_id=opportunity.opportunity_id)
        self.risk_model.observe_price(chain.native_symbol, native_usd)

        gas_cost_usd = Decimal(gas.cost_native) * native_usd / (Decimal(10) ** chain.native_decimals)
        token_unit = Decimal(10) ** opportunity.token_in_decimals
        # Round the gas charge up so the net figure stays conservative
        gas_cost_in_token = int((gas_cost_usd / token_usd * token_unit).to_integral_value(rounding=ROUND_CEILING))

        net_profit = legs.gross_profit - gas_cost_in_token
        if net_profit <= 0:
            raise InsufficientProfitError(
                f"Gas ${gas_cost_usd:.2f} exceeds gross profit",
                chain=opportunity.chain, opportunity_id=opportunity.opportunity_id
            )

        risk = self.risk_model.assess(
            confidence=opportunity.confidence,
            position=legs.front_run_in,
            reserve_in=reserve_in,
            gas_volatility=self.gas_model.volatility(opportunity.chain),
            price_volatility=self.risk_model.price_volatility(chain.native_symbol),
        )
        adjusted = risk.apply(net_profit)
        adjusted_usd = Decimal(adjusted) * token_usd / token_unit
        if adjusted_usd <= self.settings.min_net_profit_usd:
            raise InsufficientProfitError(
                f"Risk-adjusted profit ${adjusted_usd:.2f} below ${self.settings.min_net_profit_usd}",
                chain=opportunity.chain, opportunity_id=opportunity.opportunity_id
            )

        return ProfitEstimate(
            opportunity_id=opportunity.opportunity_id,
            chain=opportunity.chain,
            front_run_amount=legs.front_run_in,
            back_run_amount=legs.front_run_out,
            expected_back_run_out=legs.back_run_out,
            expected_victim_out=legs.victim_out,
            gross_profit=legs.gross_profit,
            gas_units=gas.gas_units,
            gas_price=gas.effective_gas_price,
            gas_cost_native=gas.cost_native,
            gas_cost_usd=gas_cost_usd,
            gas_cost_in_token=gas_cost_in_token,
            net_profit=net_profit,
            net_profit_usd=Decimal(net_profit) * token_usd / token_unit,
            risk_score=risk.risk_score,
            risk_adjusted_profit=adjusted,
            risk_adjusted_profit_usd=adjusted_usd,
            token_in_usd_price=token_usd,
            native_usd_price=native_usd,
            iterations=iterations,
        )

    def max_position(
        self,
        math: UniswapV2Math,
        opportunity: SandwichOpportunity,
        reserve_in: int,
        reserve_out: int
    ) -> int:
        """Upper bound of the search: reserve fraction cap and victim slippage bound."""
        cap = reserve_in * self.settings.max_position_fraction_bps // BPS
        victim_bound = math.max_front_run_for_victim(
            opportunity.swap.amount_in,
            opportunity.swap.amount_out_min,
            reserve_in,
            reserve_out,
            cap,
        )
        return min(cap, victim_bound)

    def search_optimal_front_run(
        self,
        math: UniswapV2Math,
        victim_in: int,
        reserve_in: int,
        reserve_out: int,
        max_position: int
    ) -> Tuple[SandwichLegs, int]:
        """
        Integer ternary search for the most profitable front-run in [0, max_position].

        Stops when the two probes differ by less than ``search_epsilon_bps``
        of the best profit seen, or after ``search_max_iterations`` rounds.
        The best point evaluated, endpoints included, is returned.

        Returns:
            (best legs, iterations used)
        """
        def evaluate(amount: int) -> SandwichLegs:
            return math.simulate_sandwich(amount, victim_in, reserve_in, reserve_out)

        lo, hi = 0, max_position
        best = evaluate(hi)
        iterations = 0

        while hi - lo > 2 and iterations < self.settings.search_max_iterations:
            iterations += 1
            third = (hi - lo) // 3
            m1, m2 = lo + third, hi - third
            left, right = evaluate(m1), evaluate(m2)

            for legs in (left, right):
                if legs.gross_profit > best.gross_profit:
                    best = legs

            if left.gross_profit < right.gross_profit:
                lo = m1
            else:
                hi = m2

            epsilon = max(abs(best.gross_profit) * self.settings.search_epsilon_bps // BPS, 1)
            if abs(left.gross_profit - right.gross_profit) < epsilon:
                break

        middle = evaluate((lo + hi) // 2)
        if middle.gross_profit > best.gross_profit:
            best = middle
        return best, iterations

    def _remember_rejection(self, key: Tuple[str, str, str, int, int], reason: str) -> None:
        self._rejected[key] = reason
        while len(self._rejected) > self.settings.rejected_snapshot_capacity:
            self._rejected.popitem(last=False)

    def was_rejected(self, opportunity: SandwichOpportunity, reserve_in: int, reserve_out: int) -> bool:
        return opportunity.victim_key + (reserve_in, reserve_out) in self._rejected
