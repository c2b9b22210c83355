"""
Unit tests for the P&L calculator.
"""
import math

import pytest

from pnl_matrix.tools.calculator import PnLCalculator, coerce_amount, fmt_plain_br


@pytest.fixture
def calc():
    return PnLCalculator()


class TestDivision:
    """Zero divisor gives 0."""

    def test_safe_divide(self, calc):
        assert calc.safe_divide(10, 4) == 2.5
        assert calc.safe_divide(10, 0) == 0.0
        assert calc.safe_divide(10, None) == 0.0

    def test_percent_of(self, calc):
        assert calc.percent_of(830, 900) == pytest.approx(92.222, rel=1e-4)
        assert calc.percent_of(5, 0) == 0.0


class TestSeries:
    """Tests for month series helpers."""

    MONTHS = ["2025-01", "2025-02"]

    def test_combine_skips_absent_series(self, calc):
        result = calc.combine(self.MONTHS, [
            (1, {"2025-01": 100.0, "2025-02": 50.0}),
            (-1, {"2025-01": 30.0}),
            (-1, None),
        ])

        assert result == {"2025-01": 70.0, "2025-02": 50.0}

    def test_combine_never_adds_months(self, calc):
        result = calc.combine(["2025-01"], [(1, {"2025-01": 1.0, "2025-03": 9.0})])

        assert list(result) == ["2025-01"]

    def test_ratio_series(self, calc):
        result = calc.ratio_series(self.MONTHS, {"2025-01": 25.0, "2025-02": 5.0}, {"2025-01": 100.0})

        assert result == {"2025-01": 25.0, "2025-02": 0.0}


class TestProvisions:
    """Tests for the presumed-profit provisions."""

    def test_csll(self, calc):
        result = calc.csll_provision(gross_revenue=1000, service_revenue=100, taxable_financial_revenue=50)

        assert result.value == pytest.approx(0.09 * 0.12 * 1000 + 0.0288 * 100 + 0.09 * 50)
        assert result.to_dict()["metric_type"] == "provision"

    def test_irpj_below_surtax_threshold(self, calc):
        result = calc.irpj_provision(gross_revenue=100000, service_revenue=0, taxable_financial_revenue=0)

        assert result.value == pytest.approx(0.15 * 8000)

    def test_irpj_with_surtax(self, calc):
        result = calc.irpj_provision(gross_revenue=300000, service_revenue=1000, taxable_financial_revenue=100)

        # 3600 base + 400 surtax + 25 financial + 48 services
        assert result.value == pytest.approx(4073.0)
        assert result.inputs["presumed_profit"] == pytest.approx(24000.0)

    def test_considered_prefers_posted(self, calc):
        assert calc.considered(posted=12.0, provision=99.0) == 12.0
        assert calc.considered(posted=0.0, provision=99.0) == 99.0


class TestCoercion:
    """Tests for numeric coercion and display formatting."""

    @pytest.mark.parametrize("raw,expected", [
        (None, 0.0),
        ("12.5", 12.5),
        ("n/a", 0.0),
        (float("nan"), 0.0),
        (math.inf, 0.0),
        (True, 0.0),
        (7, 7.0),
    ])
    def test_coerce_amount(self, raw, expected):
        assert coerce_amount(raw) == expected

    @pytest.mark.parametrize("value,expected", [
        (1234567.8, "1.234.568"),
        (999.4, "999"),
        (2.5, "3"),
        (-1234.4, "-1.234"),
        (0, "0"),
        (None, "0"),
    ])
    def test_fmt_plain_br(self, value, expected):
        assert fmt_plain_br(value) == expected
