"""
Sandwich Risk Model.

Scores how far a profit estimate should be discounted. The score combines
detection confidence, the depth of our position in the pool and recent gas
and price volatility, each weighted by configuration.
"""
import logging
import statistics
from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Deque, Dict, Optional

from ..config.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

BPS = 10_000


class RiskLevel(str, Enum):
    """Risk levels for logging and operator views."""
    MINIMAL = "minimal"      # < 0.2
    LOW = "low"              # 0.2-0.4
    MEDIUM = "medium"        # 0.4-0.6
    HIGH = "high"            # 0.6-0.8
    CRITICAL = "critical"    # > 0.8


@dataclass
class RiskAssessment:
    """Risk score with its components, all in basis points."""
    risk_bps: int
    level: RiskLevel
    components: Dict[str, int] = field(default_factory=dict)

    @property
    def risk_score(self) -> float:
        return self.risk_bps / BPS

    def apply(self, amount: int) -> int:
        """Discount an amount by the risk score, rounding down."""
        return amount * (BPS - self.risk_bps) // BPS


class RiskModel:
    """Computes the risk multiplier applied to net profit."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._prices: Dict[str, Deque[Decimal]] = defaultdict(
            lambda: deque(maxlen=self.settings.volatility_window)
        )

    def observe_price(self, asset: str, price: Decimal) -> None:
        self._prices[asset].append(price)

    def price_volatility(self, asset: str) -> float:
        samples = self._prices.get(asset)
        if not samples or len(samples) < 2:
            return 0.0
        values = [float(p) for p in samples]
        mean = statistics.fmean(values)
        if mean <= 0:
            return 0.0
        return statistics.pstdev(values) / mean

    def assess(
        self,
        confidence: float,
        position: int,
        reserve_in: int,
        gas_volatility: float = 0.0,
        price_volatility: float = 0.0
    ) -> RiskAssessment:
        """
        Score an opportunity.

        Args:
            confidence: Detection confidence (0-1)
            position: Front-run size in token-in base units
            reserve_in: Input reserve the position is taken against
            gas_volatility: Coefficient of variation of recent gas prices
            price_volatility: Coefficient of variation of recent native prices

        Returns:
            RiskAssessment capped at 100%
        """
        s = self.settings

        uncertainty_bps = BPS - int(round(max(0.0, min(1.0, confidence)) * BPS))

        cap = reserve_in * s.max_position_fraction_bps // BPS
        depth_bps = min(BPS, position * BPS // cap) if cap > 0 else BPS

        volatility = max(gas_volatility, price_volatility)
        volatility_bps = min(BPS, int(volatility * BPS))

        components = {
            "confidence": uncertainty_bps * s.risk_confidence_weight_bps // BPS,
            "depth": depth_bps * s.risk_depth_weight_bps // BPS,
            "volatility": volatility_bps * s.risk_volatility_weight_bps // BPS,
        }
        risk_bps = min(BPS, sum(components.values()))
        return RiskAssessment(risk_bps=risk_bps, level=self._categorize(risk_bps), components=components)

    @staticmethod
    def _categorize(risk_bps: int) -> RiskLevel:
        if risk_bps < 2000:
            return RiskLevel.MINIMAL
        elif risk_bps < 4000:
            return RiskLevel.LOW
        elif risk_bps < 6000:
            return RiskLevel.MEDIUM
        elif risk_bps < 8000:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL
