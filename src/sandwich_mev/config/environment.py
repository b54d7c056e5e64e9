"""Environment detection and logging setup."""
import os
import logging
from enum import Enum
from typing import Any, Dict, Optional

from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def get_environment() -> Environment:
    """Detect the current environment from the ENVIRONMENT variable."""
    env_name = os.getenv("ENVIRONMENT", "development").lower()

    try:
        return Environment(env_name)
    except ValueError:
        logger.warning(f"Unknown environment '{env_name}', defaulting to development")
        return Environment.DEVELOPMENT


def configure_logging(settings: Optional[Settings] = None) -> int:
    """
    Configure root logging from settings.

    Returns:
        The numeric log level applied
    """
    settings = settings or default_settings
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(log_level)

    env = get_environment()
    logger.info(f"Environment: {env.value}, log level: {logging.getLevelName(log_level)}")
    if env == Environment.PRODUCTION and settings.simulation_only:
        logger.warning("Running in production with SIMULATION_ONLY enabled, nothing will be submitted")

    return log_level


def get_environment_info(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Summarize the runtime configuration for startup logs."""
    settings = settings or default_settings
    return {
        "environment": get_environment().value,
        "log_level": settings.log_level,
        "chains": settings.chains,
        "simulation_only": settings.simulation_only,
        "redis_mirror": settings.redis_url is not None,
    }


def initialize_environment(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Apply logging settings and log the runtime configuration."""
    settings = settings or default_settings
    configure_logging(settings)

    env_info = get_environment_info(settings)
    logger.info(f"Chains: {', '.join(env_info['chains'])}")
    logger.info(f"Simulation only: {env_info['simulation_only']}")
    logger.info(f"Redis mirror: {env_info['redis_mirror']}")
    return env_info
