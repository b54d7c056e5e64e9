"""Gas cost model for the two attacker legs of a sandwich."""
import logging
import statistics
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from ..chains import ChainFamily, get_chain
from ..config.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SANDWICH_LEGS = 2
SOLANA_SIGNATURE_FEE_LAMPORTS = 5000
MICRO_LAMPORTS_PER_LAMPORT = 1_000_000


@dataclass(frozen=True)
class GasEstimate:
    """Gas needed by the front-run and back-run together."""
    chain: str
    gas_units: int
    gas_price: int              # observed price (wei/gas, or micro-lamports/CU)
    effective_gas_price: int    # price including the configured premium
    cost_native: int            # native base units (wei, lamports)


class GasModel:
    """
    Prices the sandwich legs in native units and tracks gas volatility.

    EVM: units * effective price in wei. Solana: compute units priced in
    micro-lamports plus the per-signature base fee.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._observations: Dict[str, Deque[int]] = defaultdict(
            lambda: deque(maxlen=self.settings.volatility_window)
        )

    def estimate(self, chain: str, gas_price: int) -> GasEstimate:
        if gas_price < 0:
            raise ValueError(f"Negative gas price: {gas_price}")

        units_per_swap = self.settings.gas_units_per_swap.get(chain)
        if units_per_swap is None:
            raise KeyError(f"No gas units configured for {chain}")

        gas_units = units_per_swap * SANDWICH_LEGS
        effective = gas_price * (10_000 + self.settings.gas_premium_bps) // 10_000

        if get_chain(chain).family == ChainFamily.SOLANA:
            cost = gas_units * effective // MICRO_LAMPORTS_PER_LAMPORT + SOLANA_SIGNATURE_FEE_LAMPORTS * SANDWICH_LEGS
        else:
            cost = gas_units * effective

        return GasEstimate(
            chain=chain,
            gas_units=gas_units,
            gas_price=gas_price,
            effective_gas_price=effective,
            cost_native=cost,
        )

    def observe(self, chain: str, gas_price: int) -> None:
        self._observations[chain].append(gas_price)

    def volatility(self, chain: str) -> float:
        """Coefficient of variation of recent gas prices, 0 with fewer than two samples."""
        samples = self._observations.get(chain)
        if not samples or len(samples) < 2:
            return 0.0
        mean = statistics.fmean(samples)
        if mean <= 0:
            return 0.0
        return statistics.pstdev(samples) / mean
