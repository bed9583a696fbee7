"""
Exchange Client Abstraction Layer

All exchange clients implement the ExchangeGateway abstract base class so the
signal engine and order orchestrator stay exchange agnostic.

Usage:
    from trader.exchange_clients import BinanceClient

    exchange = BinanceClient(
        api_key="...",
        api_secret="...",
        tick_bus=bus,
    )
"""

from trader.exchange_clients.base import ExchangeGateway
from trader.exchange_clients.binance_client import BinanceClient

__all__ = ["ExchangeGateway", "BinanceClient"]
