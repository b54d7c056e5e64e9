"""Error taxonomy for the sandwich pipeline.

Only ``SubmissionError`` is retried. Every other error is terminal for the
opportunity that raised it and never affects other in-flight opportunities.
"""
from typing import Optional


class SandwichPipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        opportunity_id: Optional[str] = None
    ):
        """
        Initialize pipeline error.

        Args:
            message: Error message
            chain: Chain name where the error occurred
            opportunity_id: Opportunity being processed, if any
        """
        self.chain = chain
        self.opportunity_id = opportunity_id
        super().__init__(message)

    def __str__(self) -> str:
        """String representation of the error."""
        base_msg = super().__str__()
        if self.chain and self.opportunity_id:
            return f"[{self.chain}:{self.opportunity_id}] {base_msg}"
        elif self.chain:
            return f"[{self.chain}] {base_msg}"
        return base_msg


class DecodeError(SandwichPipelineError):
    """Calldata did not match any known router interface."""
    pass


class StaleDataError(SandwichPipelineError):
    """Reserves or the victim transaction are no longer current."""
    pass


class InsufficientProfitError(SandwichPipelineError):
    """No front-run size clears the minimum profit threshold."""
    pass


class SimulationMismatchError(SandwichPipelineError):
    """Simulated profit diverged from the estimate beyond tolerance."""

    def __init__(
        self,
        message: str,
        expected_profit: int = 0,
        simulated_profit: int = 0,
        **kwargs
    ):
        self.expected_profit = expected_profit
        self.simulated_profit = simulated_profit
        super().__init__(message, **kwargs)


class SubmissionError(SandwichPipelineError):
    """Relay transport failure. Retried with bounded backoff."""

    def __init__(self, message: str, retry_count: int = 0, **kwargs):
        self.retry_count = retry_count
        super().__init__(message, **kwargs)


class RelayRejectedError(SandwichPipelineError):
    """The relay answered and refused the bundle."""
    pass


class NonceConflictError(SandwichPipelineError):
    """Nonce assignment conflicted with chain state.

    The wallet nonce must be refreshed before any further signing.
    """

    def __init__(self, message: str, wallet: Optional[str] = None, **kwargs):
        self.wallet = wallet
        super().__init__(message, **kwargs)


class EmergencyStopError(SandwichPipelineError):
    """Operator halt is active."""
    pass


class InvalidTransitionError(SandwichPipelineError):
    """A bundle status change not allowed by the lifecycle."""
    pass
