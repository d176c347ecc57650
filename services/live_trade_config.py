"""
============================================================================
BarterBay Live Trade - Configuration
============================================================================

Reliability Level: L6 Critical

This module provides configuration management for the live-trade service:
- Environment variable parsing with type safety
- Default values for optional configuration
- Validation with fail-closed behavior on invalid timing values (CFG-001)

ENVIRONMENT VARIABLES:
    - LIVE_TRADE_IDLE_TIMEOUT_SECONDS: Idle auto-cancel threshold (default: 600, 0 disables)
    - LIVE_TRADE_SWEEP_INTERVAL_SECONDS: Staleness sweep period (default: 30)
    - LIVE_TRADE_TERMINAL_GRACE_SECONDS: Terminal session retention (default: 0)
    - LIVE_TRADE_ALLOW_EMPTY_TRADE: Allow confirming two empty offers (default: false)
    - LIVE_TRADE_REQUIRE_ONLINE_PARTNER: Reject invites to offline users (default: false)
    - LIVE_TRADE_SUPERSEDE_CLOSE_CODE: Close code for superseded sockets (default: 4000)

ERROR CODES:
    - CFG-001: Invalid configuration

============================================================================
"""

from typing import Optional, List
from dataclasses import dataclass
import logging
import os

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class LiveTradeConfigErrorCode:
    """Configuration error codes for audit logging."""
    CONFIG_INVALID = "CFG-001"


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_IDLE_TIMEOUT_SECONDS = 600
DEFAULT_SWEEP_INTERVAL_SECONDS = 30
DEFAULT_TERMINAL_GRACE_SECONDS = 0
DEFAULT_ALLOW_EMPTY_TRADE = False
DEFAULT_REQUIRE_ONLINE_PARTNER = False

# Application-defined close code (4000-4999 is reserved for applications)
DEFAULT_SUPERSEDE_CLOSE_CODE = 4000


# =============================================================================
# Configuration Validation Exception
# =============================================================================

class LiveTradeConfigurationError(Exception):
    """Raised when live-trade configuration is invalid."""

    def __init__(
        self,
        message: str,
        error_code: str = LiveTradeConfigErrorCode.CONFIG_INVALID,
    ) -> None:
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# Parsing Helpers
# =============================================================================

_TRUE_VALUES = ("true", "1", "yes", "on")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(
            f"[LIVE-TRADE-CONFIG] Invalid {name} value: {raw}, "
            f"using default: {default}"
        )
        return default


# =============================================================================
# LiveTradeConfig Class
# =============================================================================

@dataclass
class LiveTradeConfig:
    """
    Live-trade service configuration.

    ============================================================================
    CONFIGURATION PARAMETERS:
    ============================================================================
    - idle_timeout_seconds: INVITED/NEGOTIATING sessions idle longer than this
      are auto-cancelled. 0 disables the policy.
    - sweep_interval_seconds: Period of the staleness sweeper.
    - terminal_grace_seconds: How long a finished session remains addressable
      by id so late messages get InvalidState instead of SessionNotFound.
    - allow_empty_trade: Whether two empty offers may be confirmed.
    - require_online_partner: Reject invites when the target is offline.
    - supersede_close_code: WebSocket close code for a superseded connection.
    ============================================================================
    """

    idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    terminal_grace_seconds: int = DEFAULT_TERMINAL_GRACE_SECONDS
    allow_empty_trade: bool = DEFAULT_ALLOW_EMPTY_TRADE
    require_online_partner: bool = DEFAULT_REQUIRE_ONLINE_PARTNER
    supersede_close_code: int = DEFAULT_SUPERSEDE_CLOSE_CODE

    @property
    def idle_timeout_enabled(self) -> bool:
        return self.idle_timeout_seconds > 0

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            LiveTradeConfigurationError: If any value is out of range (CFG-001)
        """
        errors: List[str] = []

        if self.idle_timeout_seconds < 0:
            errors.append(
                f"LIVE_TRADE_IDLE_TIMEOUT_SECONDS must be >= 0, "
                f"got: {self.idle_timeout_seconds}"
            )

        if self.sweep_interval_seconds <= 0:
            errors.append(
                f"LIVE_TRADE_SWEEP_INTERVAL_SECONDS must be positive, "
                f"got: {self.sweep_interval_seconds}"
            )

        if self.terminal_grace_seconds < 0:
            errors.append(
                f"LIVE_TRADE_TERMINAL_GRACE_SECONDS must be >= 0, "
                f"got: {self.terminal_grace_seconds}"
            )

        if not 4000 <= self.supersede_close_code <= 4999:
            errors.append(
                f"LIVE_TRADE_SUPERSEDE_CLOSE_CODE must be in 4000-4999, "
                f"got: {self.supersede_close_code}"
            )

        if errors:
            error_msg = "Live-trade configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{LiveTradeConfigErrorCode.CONFIG_INVALID}] {error_msg}")
            raise LiveTradeConfigurationError(error_msg)

        logger.info(
            f"[LIVE-TRADE-CONFIG] Configuration validated | "
            f"idle_timeout_seconds={self.idle_timeout_seconds} | "
            f"sweep_interval_seconds={self.sweep_interval_seconds} | "
            f"terminal_grace_seconds={self.terminal_grace_seconds} | "
            f"allow_empty_trade={self.allow_empty_trade} | "
            f"require_online_partner={self.require_online_partner}"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "LiveTradeConfig":
        """
        Load configuration from environment variables.

        Malformed integers fall back to their defaults with a warning;
        out-of-range values are caught by validate().

        Args:
            validate: Whether to validate after loading (default: True)

        Returns:
            LiveTradeConfig instance

        Raises:
            LiveTradeConfigurationError: If validation fails
        """
        config = cls(
            idle_timeout_seconds=_env_int(
                "LIVE_TRADE_IDLE_TIMEOUT_SECONDS", DEFAULT_IDLE_TIMEOUT_SECONDS
            ),
            sweep_interval_seconds=_env_int(
                "LIVE_TRADE_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS
            ),
            terminal_grace_seconds=_env_int(
                "LIVE_TRADE_TERMINAL_GRACE_SECONDS", DEFAULT_TERMINAL_GRACE_SECONDS
            ),
            allow_empty_trade=_env_bool(
                "LIVE_TRADE_ALLOW_EMPTY_TRADE", DEFAULT_ALLOW_EMPTY_TRADE
            ),
            require_online_partner=_env_bool(
                "LIVE_TRADE_REQUIRE_ONLINE_PARTNER", DEFAULT_REQUIRE_ONLINE_PARTNER
            ),
            supersede_close_code=_env_int(
                "LIVE_TRADE_SUPERSEDE_CLOSE_CODE", DEFAULT_SUPERSEDE_CLOSE_CODE
            ),
        )

        logger.info(
            f"[LIVE-TRADE-CONFIG] Loaded configuration from environment | "
            f"{config.to_dict()}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> dict:
        return {
            "idle_timeout_seconds": self.idle_timeout_seconds,
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "terminal_grace_seconds": self.terminal_grace_seconds,
            "allow_empty_trade": self.allow_empty_trade,
            "require_online_partner": self.require_online_partner,
            "supersede_close_code": self.supersede_close_code,
        }


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[LiveTradeConfig] = None


def get_live_trade_config(validate: bool = True) -> LiveTradeConfig:
    """
    Get the process-wide configuration, loading it from the environment on
    first access.
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = LiveTradeConfig.from_environment(validate=validate)

    return _config_instance


def reset_live_trade_config() -> None:
    """Drop the cached configuration. Used by tests."""
    global _config_instance
    _config_instance = None
    logger.debug("[LIVE-TRADE-CONFIG] Configuration instance reset")


__all__ = [
    "LiveTradeConfig",
    "LiveTradeConfigurationError",
    "LiveTradeConfigErrorCode",
    "DEFAULT_IDLE_TIMEOUT_SECONDS",
    "DEFAULT_SWEEP_INTERVAL_SECONDS",
    "DEFAULT_TERMINAL_GRACE_SECONDS",
    "DEFAULT_SUPERSEDE_CLOSE_CODE",
    "get_live_trade_config",
    "reset_live_trade_config",
]
