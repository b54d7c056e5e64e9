"""
Bundle Execution.

Bundle lifecycle, transaction building, nonce-safe signing and the
orchestrator that drives bundles through relays.
"""
from .bundle_models import (
    Bundle,
    BundleStatus,
    BundleTransaction,
    TransactionRole,
    UnsignedTransaction
)
from .transaction_builder import SandwichTransactionBuilder
from .nonce_manager import NonceManager
from .signer import EthAccountSigner
from .orchestrator import ExecutionOrchestrator, ExecutionResult

__all__ = [
    # Models
    "Bundle",
    "BundleStatus",
    "BundleTransaction",
    "TransactionRole",
    "UnsignedTransaction",

    # Building and signing
    "SandwichTransactionBuilder",
    "NonceManager",
    "EthAccountSigner",

    # Orchestration
    "ExecutionOrchestrator",
    "ExecutionResult",
]
