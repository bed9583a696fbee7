"""
Indicator Calculator for the RSI-over-SMA strategy

Calculates the indicator series the signal engine compares candle by candle:
- RSI (Relative Strength Index, Wilder smoothing)
- SMA (Simple Moving Average), applied to closes or to the RSI series itself

Series are aligned to the END of the input: the last element of every
series corresponds to the last input value.
"""

from typing import List, Optional


class IndicatorCalculator:
    """
    Calculates technical indicators from close prices

    Scalar helpers return None when there is not enough history; series
    helpers return a shorter (possibly empty) list.
    """

    def calculate_rsi_series(self, prices: List[float], period: int = 14) -> List[float]:
        """
        Calculate the RSI value for every candle once `period` changes exist

        Args:
            prices: Close prices, oldest first
            period: Smoothing period

        Returns:
            RSI values; the first one corresponds to prices[period]
        """
        if period <= 0 or len(prices) < period + 1:
            return []

        # Calculate price changes
        changes = [prices[i] - prices[i - 1] for i in range(1, len(prices))]

        gains = [change if change > 0 else 0 for change in changes]
        losses = [-change if change < 0 else 0 for change in changes]

        # Initial average gain/loss
        avg_gain = sum(gains[:period]) / period
        avg_loss = sum(losses[:period]) / period

        series = [self._rsi_from_averages(avg_gain, avg_loss)]

        # Smooth using Wilder's method
        for i in range(period, len(gains)):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
            series.append(self._rsi_from_averages(avg_gain, avg_loss))

        return series

    def calculate_sma_series(self, values: List[float], period: int) -> List[float]:
        """Rolling mean; the first value covers values[0:period]"""
        if period <= 0 or len(values) < period:
            return []

        window_sum = sum(values[:period])
        series = [window_sum / period]
        for i in range(period, len(values)):
            window_sum += values[i] - values[i - period]
            series.append(window_sum / period)
        return series

    def calculate_rsi(self, prices: List[float], period: int = 14) -> Optional[float]:
        """Calculate RSI (Relative Strength Index)"""
        series = self.calculate_rsi_series(prices, period)
        return series[-1] if series else None

    def calculate_sma(self, prices: List[float], period: int) -> Optional[float]:
        """Calculate SMA (Simple Moving Average)"""
        if period <= 0 or len(prices) < period:
            return None
        return sum(prices[-period:]) / period

    @staticmethod
    def _rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
        if avg_loss == 0:
            return 100.0

        rs = avg_gain / avg_loss
        return 100 - (100 / (1 + rs))
