"""Configuration management for the pay-in monitor"""

import os
import logging
from typing import List, Optional
from urllib.parse import quote_plus, urlsplit, urlunsplit

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not a number, using default {default}")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not an integer, using default {default}")
        return default


def _with_credentials(url: Optional[str], username: Optional[str], password: Optional[str]) -> Optional[str]:
    """Inject DATASOURCE_USERNAME / DATASOURCE_PASSWORD into the database URL"""
    if not url or not username:
        return url
    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    userinfo = quote_plus(username)
    if password:
        userinfo += ":" + quote_plus(password)
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database: credentials from the deployment secrets take precedence over the URL
    DATASOURCE_USERNAME = os.getenv("DATASOURCE_USERNAME")
    DATASOURCE_PASSWORD = os.getenv("DATASOURCE_PASSWORD")
    DATABASE_URL = _with_credentials(os.getenv("DATABASE_URL"), DATASOURCE_USERNAME, DATASOURCE_PASSWORD)

    # Blockchain
    BITCOIN_NETWORK = os.getenv("BITCOIN_NETWORK", "testnet").lower().strip()
    SUPPORTED_BITCOIN_NETWORKS = ("mainnet", "testnet", "regtest")
    BLOCKCHAIN_WATCH_FACTORY = os.getenv("BLOCKCHAIN_WATCH_FACTORY", "")

    # Exchange rates: how many blocks an earlier recorded rate may lag the payment block (~1 day)
    EXCHANGE_RATE_MAX_BLOCK_GAP = _env_int("EXCHANGE_RATE_MAX_BLOCK_GAP", 144)

    # Notification listener
    LISTENER_POLL_TIMEOUT = _env_float("LISTENER_POLL_TIMEOUT", 1.0)
    LISTENER_STOP_TIMEOUT = _env_float("LISTENER_STOP_TIMEOUT", 10.0)
    LISTENER_RECONNECT_INITIAL_DELAY = _env_float("LISTENER_RECONNECT_INITIAL_DELAY", 1.0)
    LISTENER_RECONNECT_MAX_DELAY = _env_float("LISTENER_RECONNECT_MAX_DELAY", 30.0)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems (empty when valid)"""
        problems = []
        if not cls.DATABASE_URL:
            problems.append("DATABASE_URL is not set")
        if cls.BITCOIN_NETWORK not in cls.SUPPORTED_BITCOIN_NETWORKS:
            problems.append(
                f"BITCOIN_NETWORK={cls.BITCOIN_NETWORK!r} is not one of {', '.join(cls.SUPPORTED_BITCOIN_NETWORKS)}"
            )
        if cls.EXCHANGE_RATE_MAX_BLOCK_GAP < 0:
            problems.append("EXCHANGE_RATE_MAX_BLOCK_GAP must not be negative")
        if cls.LISTENER_POLL_TIMEOUT <= 0:
            problems.append("LISTENER_POLL_TIMEOUT must be positive")
        if cls.LISTENER_RECONNECT_INITIAL_DELAY <= 0:
            problems.append("LISTENER_RECONNECT_INITIAL_DELAY must be positive")
        if cls.LISTENER_RECONNECT_MAX_DELAY < cls.LISTENER_RECONNECT_INITIAL_DELAY:
            problems.append("LISTENER_RECONNECT_MAX_DELAY must not be below the initial delay")
        return problems

    @classmethod
    def log_environment_config(cls):
        """Log current configuration for debugging (no secrets)"""
        logger.info(f"🔧 Pay-in Monitor Configuration:")
        logger.info(f"   Environment: {cls.ENVIRONMENT.upper()}")
        logger.info(f"   Bitcoin Network: {cls.BITCOIN_NETWORK}")
        if cls.DATABASE_URL:
            host = urlsplit(cls.DATABASE_URL).netloc.rsplit("@", 1)[-1]
            logger.info(f"   Database Host: {host}")
        else:
            logger.error(f"   ❌ Database: NOT CONFIGURED - check DATABASE_URL")
        logger.info(f"   Exchange Rate Max Block Gap: {cls.EXCHANGE_RATE_MAX_BLOCK_GAP}")
        logger.info(f"   Blockchain Watch: {cls.BLOCKCHAIN_WATCH_FACTORY or 'in-memory (no SPV client configured)'}")
        logger.info(
            f"   Listener: poll={cls.LISTENER_POLL_TIMEOUT}s stop={cls.LISTENER_STOP_TIMEOUT}s "
            f"backoff={cls.LISTENER_RECONNECT_INITIAL_DELAY}s..{cls.LISTENER_RECONNECT_MAX_DELAY}s"
        )
