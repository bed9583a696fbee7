from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Binance API (HMAC keys)
    binance_api_key: str = ""
    binance_api_secret: str = ""
    binance_testnet: bool = False
    binance_base_url: str = "https://api.binance.com"
    binance_stream_url: str = "wss://stream.binance.com:9443"
    http_timeout_seconds: float = 30.0

    @field_validator("binance_api_secret")
    @classmethod
    def strip_secret(cls, v: str) -> str:
        """Secrets pasted into .env often carry trailing whitespace"""
        return v.strip() if v else v

    # Database
    database_url: str = "sqlite+aiosqlite:///./trader.db"
    database_echo: bool = False

    # Strategy universe
    # Scanned in order; the first pair whose prior daily candle is bullish wins
    candidate_base_assets: List[str] = ["BTC", "ETH", "BNB", "SOL", "XRP", "LTC"]
    default_quote_currency: str = "USDT"
    candle_interval: str = "15m"
    candle_limit: int = 1000

    # Scheduling
    coordinator_poll_seconds: float = 5.0
    campaign_restart_delay_seconds: float = 1.0
    next_candle_margin_seconds: float = 0.5

    # Order watching
    order_poll_fast_seconds: float = 1.0
    order_poll_slow_seconds: float = 5.0
    rate_limit_comfort_ratio: float = 0.5  # Poll fast while more than this share of weight is left
    watcher_max_retries: int = 5
    watcher_retry_delay_seconds: float = 1.0

    # Retries
    sell_max_retries: int = 5
    sell_retry_delay_seconds: float = 1.0
    candle_fetch_max_retries: int = 5
    candle_fetch_retry_delay_seconds: float = 1.0

    # Money management
    min_trade_balance: float = 10.0  # Exchange minimum notional; campaigns below it go inactive
    buy_fee_buffer: float = 0.001  # 0.1% of balance kept aside for fees

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_base_url(self) -> str:
        if self.binance_testnet:
            return "https://testnet.binance.vision"
        return self.binance_base_url

    def get_stream_url(self) -> str:
        if self.binance_testnet:
            return "wss://testnet.binance.vision"
        return self.binance_stream_url


settings = Settings()
