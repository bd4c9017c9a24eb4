"""
Configuration for the Video Room Track Monitor
==============================================

Loads vendor credentials and runtime settings from the environment
(optionally from a local .env file). The production environment uses the
plain LIVEKIT_* variables; any other environment selector ``<env>`` reads
LIVEKIT_<ENV>_URL, LIVEKIT_<ENV>_API_KEY and LIVEKIT_<ENV>_API_SECRET.
"""

import os
import logging
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger("config")

DEFAULT_ENVIRONMENT = "prod"

# Max. period a participant may stay in a room (14400 seconds, 4 hours)
MAX_ALLOWED_SESSION_DURATION = 14400

STATS_INTERVAL_SECONDS = float(os.getenv("STATS_INTERVAL_SECONDS", "1.0"))

TOKEN_SERVER_HOST = os.getenv("TOKEN_SERVER_HOST", "0.0.0.0")
TOKEN_SERVER_PORT = int(os.getenv("TOKEN_SERVER_PORT", "3002"))


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid"""

    pass


@dataclass(frozen=True)
class EnvironmentCredentials:
    """Vendor credentials for one environment"""

    environment: str
    url: str
    api_key: str
    api_secret: str

    def masked_key(self) -> str:
        return f"{self.api_key[:10]}..."


def _env_prefix(environment: str) -> str:
    if environment == DEFAULT_ENVIRONMENT:
        return "LIVEKIT"
    suffix = environment.upper().replace("-", "_")
    return f"LIVEKIT_{suffix}"


def get_credentials(environment: str = DEFAULT_ENVIRONMENT) -> EnvironmentCredentials:
    """
    Resolve vendor credentials for an environment selector.

    Args:
        environment (str): Environment name, e.g. "prod", "stage", "dev"

    Returns:
        EnvironmentCredentials: url, api key and secret for the environment

    Raises:
        ConfigError: If the selector is malformed or any variable is missing
    """
    environment = (environment or DEFAULT_ENVIRONMENT).strip()
    if not environment.replace("-", "").replace("_", "").isalnum():
        raise ConfigError(f"Invalid environment selector: {environment!r}")

    prefix = _env_prefix(environment)
    url = os.getenv(f"{prefix}_URL")
    api_key = os.getenv(f"{prefix}_API_KEY")
    api_secret = os.getenv(f"{prefix}_API_SECRET")

    # Validate required environment variables
    if not all([url, api_key, api_secret]):
        raise ConfigError(
            f"Missing required LiveKit environment variables for '{environment}': "
            f"{prefix}_URL, {prefix}_API_KEY, {prefix}_API_SECRET"
        )

    return EnvironmentCredentials(
        environment=environment, url=url, api_key=api_key, api_secret=api_secret
    )


def get_log_level(default: str = "INFO") -> int:
    """Map the LOG_LEVEL environment variable to a logging level."""
    name = os.getenv("LOG_LEVEL", default).upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        logger.warning(f"⚠️ Unknown LOG_LEVEL {name!r}, using {default}")
        return logging.getLevelName(default)
    return level
