"""Private bundle relays per chain."""
from .base_relay import BundleStatusReport, JsonRpcRelayClient, RelayClient, SimulationResult
from .bloxroute_client import BloxrouteClient, create_bloxroute_client
from .flashbots_client import FlashbotsClient, create_flashbots_client
from .jito_client import JitoClient, create_jito_client

__all__ = [
    "RelayClient",
    "JsonRpcRelayClient",
    "SimulationResult",
    "BundleStatusReport",
    "FlashbotsClient",
    "BloxrouteClient",
    "JitoClient",
    "create_flashbots_client",
    "create_bloxroute_client",
    "create_jito_client",
]
