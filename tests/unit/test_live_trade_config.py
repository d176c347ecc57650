"""
============================================================================
Unit Tests - Live Trade Configuration
============================================================================

Reliability Level: L6 Critical

Tests:
- Default values
- Environment parsing and fallbacks
- Validation failures (CFG-001)
- Singleton accessors
============================================================================
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.live_trade_config import (
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_SUPERSEDE_CLOSE_CODE,
    LiveTradeConfig,
    LiveTradeConfigErrorCode,
    LiveTradeConfigurationError,
    get_live_trade_config,
    reset_live_trade_config,
)


ENV_VARS = [
    "LIVE_TRADE_IDLE_TIMEOUT_SECONDS",
    "LIVE_TRADE_SWEEP_INTERVAL_SECONDS",
    "LIVE_TRADE_TERMINAL_GRACE_SECONDS",
    "LIVE_TRADE_ALLOW_EMPTY_TRADE",
    "LIVE_TRADE_REQUIRE_ONLINE_PARTNER",
    "LIVE_TRADE_SUPERSEDE_CLOSE_CODE",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Defaults when nothing is configured."""

    def test_dataclass_defaults(self) -> None:
        config = LiveTradeConfig()

        assert config.idle_timeout_seconds == DEFAULT_IDLE_TIMEOUT_SECONDS
        assert config.sweep_interval_seconds == 30
        assert config.terminal_grace_seconds == 0
        assert config.allow_empty_trade is False
        assert config.require_online_partner is False
        assert config.supersede_close_code == DEFAULT_SUPERSEDE_CLOSE_CODE == 4000
        assert config.idle_timeout_enabled is True

    def test_from_environment_defaults(self, clean_env) -> None:
        config = LiveTradeConfig.from_environment()

        assert config == LiveTradeConfig()


class TestEnvironmentParsing:
    """Environment variable handling."""

    def test_reads_all_values(self, clean_env) -> None:
        clean_env.setenv("LIVE_TRADE_IDLE_TIMEOUT_SECONDS", "120")
        clean_env.setenv("LIVE_TRADE_SWEEP_INTERVAL_SECONDS", "5")
        clean_env.setenv("LIVE_TRADE_TERMINAL_GRACE_SECONDS", "15")
        clean_env.setenv("LIVE_TRADE_ALLOW_EMPTY_TRADE", "true")
        clean_env.setenv("LIVE_TRADE_REQUIRE_ONLINE_PARTNER", "YES")
        clean_env.setenv("LIVE_TRADE_SUPERSEDE_CLOSE_CODE", "4001")

        config = LiveTradeConfig.from_environment()

        assert config.idle_timeout_seconds == 120
        assert config.sweep_interval_seconds == 5
        assert config.terminal_grace_seconds == 15
        assert config.allow_empty_trade is True
        assert config.require_online_partner is True
        assert config.supersede_close_code == 4001

    def test_malformed_integer_falls_back(self, clean_env) -> None:
        clean_env.setenv("LIVE_TRADE_IDLE_TIMEOUT_SECONDS", "ten minutes")

        config = LiveTradeConfig.from_environment()

        assert config.idle_timeout_seconds == DEFAULT_IDLE_TIMEOUT_SECONDS

    def test_zero_idle_timeout_disables_policy(self, clean_env) -> None:
        clean_env.setenv("LIVE_TRADE_IDLE_TIMEOUT_SECONDS", "0")

        config = LiveTradeConfig.from_environment()

        assert config.idle_timeout_enabled is False

    def test_falsey_boolean(self, clean_env) -> None:
        clean_env.setenv("LIVE_TRADE_ALLOW_EMPTY_TRADE", "no")

        assert LiveTradeConfig.from_environment().allow_empty_trade is False


class TestValidation:
    """validate() fails closed with CFG-001."""

    @pytest.mark.parametrize("kwargs", [
        {"idle_timeout_seconds": -1},
        {"sweep_interval_seconds": 0},
        {"terminal_grace_seconds": -5},
        {"supersede_close_code": 1000},
        {"supersede_close_code": 5000},
    ])
    def test_out_of_range_values_raise(self, kwargs) -> None:
        with pytest.raises(LiveTradeConfigurationError) as exc_info:
            LiveTradeConfig(**kwargs).validate()

        assert exc_info.value.error_code == LiveTradeConfigErrorCode.CONFIG_INVALID

    def test_from_environment_validates(self, clean_env) -> None:
        clean_env.setenv("LIVE_TRADE_SWEEP_INTERVAL_SECONDS", "-3")

        with pytest.raises(LiveTradeConfigurationError):
            LiveTradeConfig.from_environment()

    def test_validation_can_be_skipped(self, clean_env) -> None:
        clean_env.setenv("LIVE_TRADE_SWEEP_INTERVAL_SECONDS", "-3")

        config = LiveTradeConfig.from_environment(validate=False)

        assert config.sweep_interval_seconds == -3


class TestSingleton:
    """get_live_trade_config() caches until reset."""

    def test_cached_instance(self, clean_env) -> None:
        first = get_live_trade_config()
        clean_env.setenv("LIVE_TRADE_IDLE_TIMEOUT_SECONDS", "1")

        assert get_live_trade_config() is first

        reset_live_trade_config()
        assert get_live_trade_config().idle_timeout_seconds == 1

    def test_to_dict_round_trips_fields(self) -> None:
        config = LiveTradeConfig(idle_timeout_seconds=9)

        assert LiveTradeConfig(**config.to_dict()) == config
