"""Multi-chain sandwich opportunity pipeline."""

__version__ = "0.1.0"
