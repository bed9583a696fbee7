"""
Currency utilities for Binance symbols

Binance symbols have no separator ("BTCUSDT"), so the quote currency is
detected from a list of known suffixes.
"""

from typing import Tuple

# Longest suffixes first so "USDT" wins over "USD"
KNOWN_QUOTE_CURRENCIES = ("FDUSD", "USDT", "BUSD", "USDC", "TUSD", "USD", "EUR", "BTC", "ETH", "BNB")


def split_symbol(symbol: str) -> Tuple[str, str]:
    """
    Extract base and quote currencies from an exchange symbol

    Args:
        symbol: Trading pair like "BTCUSDT" or "ETHBTC"

    Returns:
        Tuple of (base_currency, quote_currency)
        Example: "BTCUSDT" -> ("BTC", "USDT")
                 "ETHBTC"  -> ("ETH", "BTC")

    Raises:
        ValueError: if no known quote currency matches
    """
    normalized = symbol.upper().replace("/", "").replace("-", "")
    for quote in KNOWN_QUOTE_CURRENCIES:
        if normalized.endswith(quote) and len(normalized) > len(quote):
            return (normalized[: -len(quote)], quote)
    raise ValueError(f"Unknown quote currency in symbol {symbol!r}")


def get_base_currency(symbol: str) -> str:
    base, _ = split_symbol(symbol)
    return base


def get_quote_currency(symbol: str) -> str:
    _, quote = split_symbol(symbol)
    return quote
