"""Front-run sizing, gas costing and risk adjustment."""
from .gas_model import GasEstimate, GasModel
from .risk_model import RiskAssessment, RiskLevel, RiskModel
from .profit_optimizer import ProfitOptimizer

__all__ = [
    "GasEstimate",
    "GasModel",
    "RiskAssessment",
    "RiskLevel",
    "RiskModel",
    "ProfitOptimizer",
]
