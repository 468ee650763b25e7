# backoffice/config.py
"""
Configuration management for the compensation back office.
Loads from .env, validates critical keys.
"""
import os
import json
import logging
from typing import Any, Dict
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        url = Config.get(Config.DATABASE_URL)

        # Set dynamic value
        Config.set(Config.SYSTEM_READY, True)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Logging
    LOG_LEVEL = "LOG_LEVEL"
    LOG_FILE = "LOG_FILE"

    # Compensation plan
    COMPENSATION_PLAN = "COMPENSATION_PLAN"
    RANK_CONFIG = "RANK_CONFIG"

    # Matrix placement
    PLACEMENT_MAX_ATTEMPTS = "PLACEMENT_MAX_ATTEMPTS"

    # Payout retries
    PAYOUT_MAX_RETRIES = "PAYOUT_MAX_RETRIES"
    PAYOUT_BASE_DELAY_MINUTES = "PAYOUT_BASE_DELAY_MINUTES"
    PAYOUT_MAX_DELAY_MINUTES = "PAYOUT_MAX_DELAY_MINUTES"
    PAYOUT_LEASE_SECONDS = "PAYOUT_LEASE_SECONDS"

    # Scheduler
    RETRY_POLL_INTERVAL_MINUTES = "RETRY_POLL_INTERVAL_MINUTES"
    RANK_CHECK_HOUR = "RANK_CHECK_HOUR"

    # System
    SYSTEM_READY = "SYSTEM_READY"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        DATABASE_URL,
    ]

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file and process environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                "sqlite:///backoffice.db"
            )

            # Logging
            cls._config[cls.LOG_LEVEL] = os.getenv("LOG_LEVEL", "INFO").upper()
            cls._config[cls.LOG_FILE] = os.getenv("LOG_FILE", "backoffice.log")

            # Compensation plan overrides (JSON, optional)
            cls._config[cls.COMPENSATION_PLAN] = cls._load_json_env("COMPENSATION_PLAN")
            cls._config[cls.RANK_CONFIG] = cls._load_json_env("RANK_CONFIG")

            # Matrix placement
            cls._config[cls.PLACEMENT_MAX_ATTEMPTS] = int(
                os.getenv("PLACEMENT_MAX_ATTEMPTS", "3")
            )

            # Payout retries
            cls._config[cls.PAYOUT_MAX_RETRIES] = int(os.getenv("PAYOUT_MAX_RETRIES", "3"))
            cls._config[cls.PAYOUT_BASE_DELAY_MINUTES] = int(
                os.getenv("PAYOUT_BASE_DELAY_MINUTES", "30")
            )
            cls._config[cls.PAYOUT_MAX_DELAY_MINUTES] = int(
                os.getenv("PAYOUT_MAX_DELAY_MINUTES", "1440")
            )
            cls._config[cls.PAYOUT_LEASE_SECONDS] = int(
                os.getenv("PAYOUT_LEASE_SECONDS", "300")
            )

            # Scheduler
            cls._config[cls.RETRY_POLL_INTERVAL_MINUTES] = int(
                os.getenv("RETRY_POLL_INTERVAL_MINUTES", "5")
            )
            cls._config[cls.RANK_CHECK_HOUR] = int(os.getenv("RANK_CHECK_HOUR", "0"))

            # System
            cls._config[cls.SYSTEM_READY] = False

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @staticmethod
    def _load_json_env(name: str) -> Any:
        """Parse optional JSON environment variable, None when unset."""
        raw = os.getenv(name)
        if not raw:
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{name} is not valid JSON: {e}")

    @classmethod
    def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present.

        Raises:
            ConfigurationError: If any critical key is missing
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if not cls.get(key):
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        logger.info("All critical configuration keys validated ✓")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value = cls._config.get(key)
        return default if value is None else value

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def get_all(cls) -> Dict[str, Any]:
        """
        Get all configuration values.

        Returns:
            Copy of configuration dictionary
        """
        return cls._config.copy()

    @classmethod
    def reset(cls) -> None:
        """Drop all loaded values (used between test runs)."""
        cls._config = {}
        cls._initialized = False
