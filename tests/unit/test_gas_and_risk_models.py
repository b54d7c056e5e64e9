"""Unit tests for the gas cost model and the risk model."""
from decimal import Decimal

import pytest

from sandwich_mev.optimization.gas_model import GasModel
from sandwich_mev.optimization.risk_model import RiskLevel, RiskModel

from fakes import GWEI, RESERVE_USDC, make_settings


class TestGasModel:
    """Native cost of the two attacker legs."""

    @pytest.fixture
    def gas_model(self, settings):
        return GasModel(settings)

    def test_ethereum_cost(self, gas_model):
        estimate = gas_model.estimate("ethereum", 100 * GWEI)

        assert estimate.gas_units == 300_000
        assert estimate.effective_gas_price == 120 * GWEI
        assert estimate.cost_native == 36 * 10**15

    def test_solana_compute_units_and_signature_fees(self, gas_model):
        # 400k CU at 10,000 micro-lamports (+20%) plus two 5,000 lamport signatures
        estimate = gas_model.estimate("solana", 10_000)
        assert estimate.gas_units == 400_000
        assert estimate.cost_native == 400_000 * 12_000 // 1_000_000 + 10_000

    def test_negative_gas_price(self, gas_model):
        with pytest.raises(ValueError):
            gas_model.estimate("ethereum", -1)

    def test_unconfigured_chain(self, gas_model):
        with pytest.raises(KeyError):
            gas_model.estimate("polygon", GWEI)

    def test_volatility(self, gas_model):
        assert gas_model.volatility("ethereum") == 0.0
        gas_model.observe("ethereum", 100 * GWEI)
        assert gas_model.volatility("ethereum") == 0.0

        gas_model.observe("ethereum", 100 * GWEI)
        assert gas_model.volatility("ethereum") == 0.0

        gas_model.observe("ethereum", 400 * GWEI)
        assert gas_model.volatility("ethereum") > 0.5

    def test_volatility_window(self):
        gas_model = GasModel(make_settings(volatility_window=2))
        for price in (10, 500, 100, 100):
            gas_model.observe("bsc", price * GWEI)
        assert gas_model.volatility("bsc") == 0.0


class TestRiskModel:
    """Weighted confidence, depth and volatility components."""

    @pytest.fixture
    def risk_model(self, settings):
        return RiskModel(settings)

    def test_scenario_a_components(self, risk_model):
        assessment = risk_model.assess(confidence=0.9, position=13_425_073_257, reserve_in=RESERVE_USDC)

        assert assessment.components == {"confidence": 500, "depth": 55, "volatility": 0}
        assert assessment.risk_bps == 555
        assert assessment.risk_score == pytest.approx(0.0555)
        assert assessment.level == RiskLevel.MINIMAL
        assert assessment.apply(1_000_000) == 944_500

    def test_full_depth_and_no_confidence(self, risk_model):
        assessment = risk_model.assess(confidence=0.0, position=RESERVE_USDC, reserve_in=RESERVE_USDC)

        assert assessment.components["confidence"] == 5_000
        assert assessment.components["depth"] == 2_500
        assert assessment.level == RiskLevel.HIGH

    def test_volatility_uses_the_larger_source(self, risk_model):
        assessment = risk_model.assess(
            confidence=1.0, position=0, reserve_in=RESERVE_USDC, gas_volatility=0.05, price_volatility=0.2
        )
        assert assessment.components["volatility"] == 2_000 * 2_500 // 10_000

    def test_score_is_capped(self):
        risk_model = RiskModel(make_settings(risk_confidence_weight_bps=10_000, risk_depth_weight_bps=10_000))
        assessment = risk_model.assess(confidence=0.0, position=RESERVE_USDC, reserve_in=RESERVE_USDC,
                                       gas_volatility=3.0)
        assert assessment.risk_bps == 10_000
        assert assessment.level == RiskLevel.CRITICAL
        assert assessment.apply(12345) == 0

    def test_price_volatility(self, risk_model):
        assert risk_model.price_volatility("ETH") == 0.0
        risk_model.observe_price("ETH", Decimal("1800"))
        risk_model.observe_price("ETH", Decimal("2200"))
        assert risk_model.price_volatility("ETH") == pytest.approx(0.1)
