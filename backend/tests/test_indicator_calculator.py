"""
Tests for trader/indicator_calculator.py

Covers the IndicatorCalculator class including:
- calculate_rsi_series (Wilder smoothing, alignment, degenerate inputs)
- calculate_sma_series
- calculate_rsi / calculate_sma scalar helpers
"""

import pytest

from trader.indicator_calculator import IndicatorCalculator


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def calc():
    """Fresh IndicatorCalculator instance."""
    return IndicatorCalculator()


@pytest.fixture
def trending_up_prices():
    return [100.0 + i * 0.5 for i in range(50)]


@pytest.fixture
def trending_down_prices():
    return [150.0 - i * 0.5 for i in range(50)]


# ===========================================================================
# RSI
# ===========================================================================


class TestCalculateRsiSeries:
    """Tests for calculate_rsi_series()"""

    def test_series_length_starts_after_period(self, calc, trending_up_prices):
        """Happy path: one value per price from prices[period] on."""
        series = calc.calculate_rsi_series(trending_up_prices, 14)
        assert len(series) == len(trending_up_prices) - 14

    def test_uptrend_is_100(self, calc, trending_up_prices):
        """Edge case: no losses means RSI 100."""
        assert all(v == 100.0 for v in calc.calculate_rsi_series(trending_up_prices, 14))

    def test_downtrend_is_0(self, calc, trending_down_prices):
        """Edge case: no gains means RSI 0."""
        assert all(v == 0.0 for v in calc.calculate_rsi_series(trending_down_prices, 14))

    def test_flat_prices_are_100(self, calc):
        """Edge case: zero average loss is treated as RSI 100."""
        assert calc.calculate_rsi_series([100.0] * 20, 14)[-1] == 100.0

    def test_balanced_moves_are_50(self, calc):
        """Happy path: equal average gain and loss."""
        series = calc.calculate_rsi_series([1.0, 2.0, 1.0], 2)
        assert series == [50.0]

    def test_wilder_smoothing(self, calc):
        """Happy path: second value uses (prev * (n-1) + current) / n."""
        # changes: +1, -1, +2 -> initial avg gain 0.5, loss 0.5
        # smoothed gain (0.5 + 2) / 2 = 1.25, loss (0.5 + 0) / 2 = 0.25 -> RS 5
        series = calc.calculate_rsi_series([1.0, 2.0, 1.0, 3.0], 2)
        assert series[0] == 50.0
        assert series[1] == pytest.approx(100 - 100 / 6)

    def test_short_input_is_empty(self, calc):
        """Failure: fewer than period + 1 prices."""
        assert calc.calculate_rsi_series([1.0] * 14, 14) == []

    def test_non_positive_period_is_empty(self, calc, trending_up_prices):
        assert calc.calculate_rsi_series(trending_up_prices, 0) == []


class TestCalculateRsi:
    def test_returns_last_value(self, calc):
        assert calc.calculate_rsi([1.0, 2.0, 1.0, 3.0], 2) == pytest.approx(100 - 100 / 6)

    def test_short_input_returns_none(self, calc):
        assert calc.calculate_rsi([1.0, 2.0], 14) is None


# ===========================================================================
# SMA
# ===========================================================================


class TestCalculateSmaSeries:
    def test_rolling_mean(self, calc):
        assert calc.calculate_sma_series([1.0, 2.0, 3.0, 4.0, 5.0], 3) == [2.0, 3.0, 4.0]

    def test_exact_length_gives_one_value(self, calc):
        assert calc.calculate_sma_series([2.0, 4.0], 2) == [3.0]

    def test_short_input_is_empty(self, calc):
        assert calc.calculate_sma_series([1.0], 2) == []

    def test_sma_over_rsi_aligns_to_end(self, calc, trending_up_prices):
        """Happy path: SMA of the RSI series ends on the last RSI value's candle."""
        rsi = calc.calculate_rsi_series(trending_up_prices, 14)
        sma = calc.calculate_sma_series(rsi, 14)
        assert len(sma) == len(rsi) - 13


class TestCalculateSma:
    def test_uses_last_period_values(self, calc):
        assert calc.calculate_sma([1.0, 2.0, 3.0, 4.0], 2) == 3.5

    def test_short_input_returns_none(self, calc):
        assert calc.calculate_sma([1.0], 3) is None
