"""
Tests for trader/config.py

Settings are read from the environment (and .env) by pydantic-settings.
"""

import pytest

from trader.config import Settings


class TestEndpoints:
    def test_production_endpoints_by_default(self, monkeypatch):
        monkeypatch.delenv("BINANCE_TESTNET", raising=False)
        s = Settings(_env_file=None)
        assert s.get_base_url() == "https://api.binance.com"
        assert s.get_stream_url() == "wss://stream.binance.com:9443"

    def test_testnet_switch(self, monkeypatch):
        monkeypatch.setenv("BINANCE_TESTNET", "true")
        s = Settings(_env_file=None)
        assert s.get_base_url() == "https://testnet.binance.vision"
        assert s.get_stream_url() == "wss://testnet.binance.vision"

    def test_custom_base_url_ignored_on_testnet(self):
        s = Settings(_env_file=None, binance_testnet=True, binance_base_url="https://api1.binance.com")
        assert s.get_base_url() == "https://testnet.binance.vision"


class TestValues:
    def test_secret_whitespace_stripped(self):
        s = Settings(_env_file=None, binance_api_secret="  abc123\n")
        assert s.binance_api_secret == "abc123"

    def test_candidates_from_env_json(self, monkeypatch):
        monkeypatch.setenv("CANDIDATE_BASE_ASSETS", '["SOL", "BTC"]')
        assert Settings(_env_file=None).candidate_base_assets == ["SOL", "BTC"]

    @pytest.mark.parametrize(
        "field,value",
        [("min_trade_balance", 10.0), ("buy_fee_buffer", 0.001), ("candle_interval", "15m")],
    )
    def test_defaults(self, field, value):
        assert getattr(Settings(_env_file=None), field) == value
