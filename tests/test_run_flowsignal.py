"""Tests for command-line handling."""

from flowsignal.config import Settings
from run_flowsignal import apply_overrides, parse_args


def test_defaults_leave_settings_untouched():
    settings = apply_overrides(Settings.from_env({}), parse_args([]))
    assert settings == Settings.from_env({})


def test_flags_override_environment():
    args = parse_args([
        "--symbols", "ethusdt, solusdt", "-s", "ethusdt", "-t", "1h",
        "--api", "--api-port", "9001", "--headless",
    ])
    settings = apply_overrides(Settings.from_env({"SYMBOLS": "BTCUSDT"}), args)
    assert settings.symbols == ["ETHUSDT", "SOLUSDT"]
    assert settings.default_symbol == "ETHUSDT"
    assert settings.default_timeframe == "1h"
    assert settings.api_port == 9001
    assert args.api and args.headless and not args.scan
