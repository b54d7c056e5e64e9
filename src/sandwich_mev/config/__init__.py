"""Configuration for the sandwich pipeline."""
from .settings import Settings, settings
from .environment import Environment, configure_logging, get_environment

__all__ = ["Settings", "settings", "Environment", "configure_logging", "get_environment"]
