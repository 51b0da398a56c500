"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates all required configuration at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """
    Get optional environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        Environment variable value or default
    """
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """
    Get boolean environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        Boolean value
    """
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        self.key = _get_required_env(
            "SUPABASE_KEY",
            "Supabase anon or service role key"
        )

        # Validate URL format
        if not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        # Connection settings
        self.connection_timeout = _get_int_env("SUPABASE_TIMEOUT", 10)

        if self.connection_timeout <= 0:
            raise ConfigurationError(
                f"SUPABASE_TIMEOUT must be positive: {self.connection_timeout}"
            )


# ============================================================================
# NOTIFICATION CONFIGURATION
# ============================================================================

class NotificationConfig:
    """Twilio customer notification configuration."""

    def __init__(self):
        self.enabled = _get_bool_env("ENABLE_NOTIFICATIONS", False)

        self.channel = _get_optional_env("NOTIFICATION_CHANNEL", "sms").lower()

        if self.channel not in ["sms", "whatsapp"]:
            raise ConfigurationError(
                f"Invalid NOTIFICATION_CHANNEL: {self.channel}. "
                f"Must be 'sms' or 'whatsapp'"
            )

        # Credentials are only required when notifications are on
        if self.enabled:
            self.account_sid = _get_required_env(
                "TWILIO_ACCOUNT_SID",
                "Twilio Account SID"
            )
            self.auth_token = _get_required_env(
                "TWILIO_AUTH_TOKEN",
                "Twilio Auth Token"
            )
            self.from_number = _get_required_env(
                "TWILIO_PHONE_NUMBER",
                "Twilio phone number (E.164 format)"
            )

            if not self.from_number.startswith("+"):
                raise ConfigurationError(
                    f"TWILIO_PHONE_NUMBER must be in E.164 format (start with +): "
                    f"{self.from_number}"
                )
        else:
            self.account_sid = _get_optional_env("TWILIO_ACCOUNT_SID")
            self.auth_token = _get_optional_env("TWILIO_AUTH_TOKEN")
            self.from_number = _get_optional_env("TWILIO_PHONE_NUMBER")


# ============================================================================
# RESTAURANT CONFIGURATION
# ============================================================================

class RestaurantConfig:
    """Business rules that vary per restaurant."""

    def __init__(self):
        self.name = _get_optional_env("RESTAURANT_NAME", "Restaurante")

        self.phone_country_code = _get_optional_env("PHONE_COUNTRY_CODE", "52")

        if not self.phone_country_code.isdigit():
            raise ConfigurationError(
                f"PHONE_COUNTRY_CODE must be digits only: {self.phone_country_code}"
            )

        self.business_timezone = _get_optional_env("BUSINESS_TIMEZONE", "UTC")

        try:
            ZoneInfo(self.business_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(
                f"Unknown BUSINESS_TIMEZONE: {self.business_timezone}"
            )

        self.max_conflict_retries = _get_int_env("MAX_CONFLICT_RETRIES", 3)

        if self.max_conflict_retries < 0:
            raise ConfigurationError(
                f"MAX_CONFLICT_RETRIES must be >= 0: {self.max_conflict_retries}"
            )


# ============================================================================
# CHANGE FEED CONFIGURATION
# ============================================================================

class FeedConfig:
    """Realtime change feed timing."""

    def __init__(self):
        self.resync_interval = _get_float_env("FEED_RESYNC_INTERVAL", 60.0)
        self.reconnect_delay = _get_float_env("FEED_RECONNECT_DELAY", 1.0)
        self.max_reconnect_delay = _get_float_env("FEED_MAX_RECONNECT_DELAY", 30.0)
        self.ledger_window_hours = _get_float_env("FEED_LEDGER_WINDOW_HOURS", 48.0)

        if self.resync_interval < 0:
            raise ConfigurationError(
                f"FEED_RESYNC_INTERVAL must be >= 0: {self.resync_interval}"
            )

        if not 0 < self.reconnect_delay <= self.max_reconnect_delay:
            raise ConfigurationError(
                f"FEED_RECONNECT_DELAY must be positive and at most "
                f"FEED_MAX_RECONNECT_DELAY: {self.reconnect_delay}"
            )

        if self.ledger_window_hours <= 0:
            raise ConfigurationError(
                f"FEED_LEDGER_WINDOW_HOURS must be positive: {self.ledger_window_hours}"
            )


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class FeatureFlags:
    """Feature flags for optional functionality."""

    def __init__(self):
        self.enable_sales_ledger_consumer = _get_bool_env("ENABLE_SALES_LEDGER_CONSUMER", True)
        self.enable_metrics_endpoint = _get_bool_env("ENABLE_METRICS_ENDPOINT", True)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.app_env = _get_optional_env("APP_ENV", "production").lower()

            # Local runs use the in-memory store and need no Supabase project
            self.supabase = None if self.is_local else SupabaseConfig()
            self.notifications = NotificationConfig()
            self.restaurant = RestaurantConfig()
            self.feed = FeedConfig()
            self.features = FeatureFlags()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    @property
    def is_local(self) -> bool:
        return self.app_env == "local"

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "app_env": self.app_env,
            "store": "memory" if self.is_local else "supabase",
            "restaurant": self.restaurant.name,
            "business_timezone": self.restaurant.business_timezone,
            "notifications": {
                "enabled": self.notifications.enabled,
                "channel": self.notifications.channel,
            },
            "feed": {
                "resync_interval": self.feed.resync_interval,
                "reconnect_delay": self.feed.reconnect_delay,
                "max_reconnect_delay": self.feed.max_reconnect_delay,
                "ledger_window_hours": self.feed.ledger_window_hours,
            },
            "features": {
                "sales_ledger_consumer": self.features.enable_sales_ledger_consumer,
                "metrics_endpoint": self.features.enable_metrics_endpoint,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Check for settings that work but are probably unintended.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if self.is_local and self.notifications.enabled:
            warnings.append("Notifications enabled in local mode will send real messages")

        if self.feed.resync_interval == 0:
            warnings.append("Periodic resync disabled (FEED_RESYNC_INTERVAL=0)")

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Validate configuration and log a summary.
    Useful for startup checks.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Environment: {summary['app_env']} (store: {summary['store']})")
    logger.info(f"  Restaurant: {summary['restaurant']}")
    logger.info(f"  Business timezone: {summary['business_timezone']}")
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")
    logger.info(f"  Log Level: {summary['server']['log_level']}")

    notifications = summary['notifications']
    logger.info(
        f"  Notifications: "
        f"{'enabled' if notifications['enabled'] else 'disabled'} ({notifications['channel']})"
    )

    logger.info("Feature Flags:")
    for feature, enabled in summary['features'].items():
        status = "enabled" if enabled else "disabled"
        logger.info(f"  {feature}: {status}")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")
