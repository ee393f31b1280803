"""Tests for margin normalization."""

from decimal import Decimal

from app.services.margin import (
    estimate_days_supply,
    extract_gross_profit,
    median,
    money,
    normalize_margin,
    to_decimal,
)


class TestGrossProfit:
    def test_explicit_profit_field(self):
        assert extract_gross_profit({"gross_profit": "12.50"}) == Decimal("12.50")

    def test_money_formatted_string(self):
        assert extract_gross_profit({"Net Profit": "$1,204.10"}) == Decimal("1204.10")

    def test_zero_profit_field_falls_through(self):
        raw = {"gross_profit": "0", "adj_profit": "4.25"}
        assert extract_gross_profit(raw) == Decimal("4.25")

    def test_price_minus_cost(self):
        assert extract_gross_profit({"Price": "40.00", "Actual Cost": "28.50"}) == Decimal("11.50")

    def test_missing_payload(self):
        assert extract_gross_profit(None) == Decimal("0")
        assert extract_gross_profit({}) == Decimal("0")

    def test_unparseable(self):
        assert to_decimal("n/a") is None
        assert to_decimal(True) is None


class TestDaysSupply:
    def test_recorded_value_wins(self):
        assert estimate_days_supply(84, Decimal("100")) == 84

    def test_quantity_heuristic(self):
        assert estimate_days_supply(None, Decimal("90")) == 90
        assert estimate_days_supply(None, Decimal("45")) == 60
        assert estimate_days_supply(None, Decimal("30")) == 30
        assert estimate_days_supply(0, None) == 30


class TestNormalizeMargin:
    def test_expected_qty_scales_to_one_fill(self):
        small = normalize_margin(60, 30, 30, expected_qty=30)
        large = normalize_margin(180, 90, 90, expected_qty=30)
        assert small.gp == Decimal("60")
        assert large.gp == Decimal("60")
        assert large.qty == Decimal("30")

    def test_expected_qty_drops_short_fills(self):
        assert normalize_margin(20, 10, 10, expected_qty=30) is None

    def test_expected_days_supply_scales_to_thirty_days(self):
        result = normalize_margin(90, 90, 90, expected_days_supply=90)
        assert result.gp == Decimal("30")

    def test_expected_days_supply_minimum(self):
        # 80% of 90 days is 72
        assert normalize_margin(50, 60, 60, expected_days_supply=90) is None
        assert normalize_margin(50, 80, 72, expected_days_supply=90) is not None

    def test_default_per_month(self):
        result = normalize_margin(90, 90, 90)
        assert result.gp == Decimal("30")
        assert result.qty == Decimal("30")

    def test_default_rounds_partial_months_up(self):
        result = normalize_margin(40, 45, 45)
        assert result.gp == Decimal("20")

    def test_default_requires_28_days(self):
        assert normalize_margin(40, 14, 14) is None
        assert normalize_margin(40, 28, 28).gp == Decimal("40")

    def test_minimum_can_be_skipped(self):
        result = normalize_margin(15, 14, 14, enforce_min_days=False)
        assert result.gp == Decimal("15")

    def test_zero_quantity_does_not_divide_by_zero(self):
        result = normalize_margin(30, 0, 30, expected_qty=30)
        assert result.gp == Decimal("900")


class TestAggregates:
    def test_median_odd(self):
        assert median([Decimal("10"), Decimal("50"), Decimal("30")]) == Decimal("30")

    def test_median_even(self):
        assert median([Decimal("10"), Decimal("20"), Decimal("30"), Decimal("40")]) == Decimal("25")

    def test_median_ignores_non_positive(self):
        assert median([Decimal("0"), Decimal("-5"), Decimal("12")]) == Decimal("12")
        assert median([Decimal("0")]) is None

    def test_money(self):
        assert str(money(Decimal("35"))) == "35.00"
        assert money(None) is None
