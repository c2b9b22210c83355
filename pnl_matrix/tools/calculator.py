"""
P&L Calculation Tools

CRITICAL FRAMEWORK PRINCIPLE: formulas live in one place.

Every ratio, provision and month-by-month combination used by the
statement goes through this deterministic calculator, so the division
policy (zero divisor gives 0) and the tax rates are applied identically
by the tree builder, the breakdown pivoters and the export.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from enum import Enum
import logging

from pnl_matrix.core.reporting_calendar import MonthSeries

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Categories of statement metrics."""
    PROVISION = "provision"


# Presumed-profit regime rates
CSLL_RATE = 0.09
CSLL_PRESUMED_BASE = 0.12
CSLL_SERVICE_RATE = 0.0288
IRPJ_RATE = 0.15
IRPJ_PRESUMED_BASE = 0.08
IRPJ_SURTAX_RATE = 0.10
IRPJ_SURTAX_THRESHOLD = 20000.0
IRPJ_FINANCIAL_RATE = 0.25
IRPJ_SERVICE_RATE = 0.048


@dataclass
class CalculationResult:
    """Container for a calculated monthly figure with its inputs."""
    metric_name: str
    value: float
    metric_type: MetricType
    inputs: Dict[str, float]
    formula: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "value": self.value,
            "metric_type": self.metric_type.value,
            "inputs": self.inputs,
            "formula": self.formula,
        }


def coerce_amount(value: Any) -> float:
    """
    Numeric value of a store cell.

    None, non-numeric strings, NaN and infinities all become 0.0 so a
    malformed source value never reaches a rendered total.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


class PnLCalculator:
    """
    Deterministic statement calculations.

    Series helpers take and return month series keyed by the month keys
    passed in; they never add or drop months.
    """

    @staticmethod
    def safe_divide(numerator: float, denominator: float) -> float:
        """Division where a zero (or missing) divisor yields 0."""
        if not denominator:
            return 0.0
        return numerator / denominator

    def percent_of(self, numerator: float, denominator: float) -> float:
        """numerator / denominator x 100, 0 when the divisor is 0."""
        return self.safe_divide(numerator, denominator) * 100

    @staticmethod
    def _format_plain_br(value: float) -> str:
        """Whole number with '.' thousands separators: 1234567.8 -> '1.234.568'."""
        rounded = int(math.floor(value + 0.5))
        text = f"{abs(rounded):,}".replace(",", ".")
        return f"-{text}" if rounded < 0 else text

    # ==================== SERIES ====================

    def combine(
        self,
        months: List[str],
        terms: Iterable[Tuple[float, Optional[MonthSeries]]],
    ) -> MonthSeries:
        """
        Linear combination of series: sum of coefficient x series per month.

        A None series (an absent expense group) contributes 0.
        """
        terms = list(terms)
        result: MonthSeries = {}
        for m in months:
            total = 0.0
            for coefficient, series in terms:
                if series is not None:
                    total += coefficient * (series.get(m) or 0.0)
            result[m] = total
        return result

    def ratio_series(
        self,
        months: List[str],
        numerator: MonthSeries,
        denominator: MonthSeries,
    ) -> MonthSeries:
        """Month-by-month percentage numerator / denominator x 100."""
        return {
            m: self.percent_of(numerator.get(m) or 0.0, denominator.get(m) or 0.0)
            for m in months
        }

    # ==================== INCOME TAX PROVISIONS ====================

    def csll_provision(self, gross_revenue: float, service_revenue: float,
                       taxable_financial_revenue: float) -> CalculationResult:
        """CSLL under presumed profit."""
        value = (
            CSLL_RATE * CSLL_PRESUMED_BASE * gross_revenue
            + CSLL_SERVICE_RATE * service_revenue
            + CSLL_RATE * taxable_financial_revenue
        )
        return CalculationResult(
            metric_name="CSLL – Provisão",
            value=value,
            metric_type=MetricType.PROVISION,
            inputs={
                "gross_revenue": gross_revenue,
                "service_revenue": service_revenue,
                "taxable_financial_revenue": taxable_financial_revenue,
            },
            formula="9% x 12% x Gross + 2.88% x Services + 9% x Taxable Financial",
        )

    def irpj_provision(self, gross_revenue: float, service_revenue: float,
                       taxable_financial_revenue: float) -> CalculationResult:
        """IRPJ under presumed profit, with the surtax above the monthly threshold."""
        presumed_profit = IRPJ_PRESUMED_BASE * gross_revenue
        base = IRPJ_RATE * presumed_profit
        surtax = IRPJ_SURTAX_RATE * max(presumed_profit - IRPJ_SURTAX_THRESHOLD, 0)
        financial = IRPJ_FINANCIAL_RATE * taxable_financial_revenue
        service = IRPJ_SERVICE_RATE * service_revenue
        return CalculationResult(
            metric_name="IRPJ – Provisão",
            value=base + surtax + financial + service,
            metric_type=MetricType.PROVISION,
            inputs={
                "gross_revenue": gross_revenue,
                "presumed_profit": presumed_profit,
                "service_revenue": service_revenue,
                "taxable_financial_revenue": taxable_financial_revenue,
            },
            formula=(
                "15% x (8% x Gross) + 10% x max(8% x Gross - 20000, 0) "
                "+ 25% x Taxable Financial + 4.8% x Services"
            ),
        )

    @staticmethod
    def considered(posted: float, provision: float) -> float:
        """Ledger-posted amount when non-zero, else the provision."""
        return posted if posted != 0 else provision


# Singleton calculator instance
_calculator = PnLCalculator()

def get_calculator() -> PnLCalculator:
    """Get the calculator instance."""
    return _calculator


def fmt_plain_br(value: float) -> str:
    """pt-BR plain number: rounded, no decimals, '.' thousands separators."""
    return PnLCalculator._format_plain_br(coerce_amount(value))
