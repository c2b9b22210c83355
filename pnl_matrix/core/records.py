"""
Typed rows returned by the backing-store clients.

Aggregates are pre-summed per month by the stores; every amount has
already been through coerce_amount, so consumers can add them blindly.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from pnl_matrix.core.financial_semantics import AccountKind


@dataclass
class AggregateRow:
    """
    One monthly aggregate.

    Attributes:
        period: Month key "YYYY-MM"
        amount: Monthly sum
        label: Breakdown label (family or product); empty for single-line fetchers
        kind: Source kind, set by fetchers that union several kinds
    """
    period: str
    amount: float
    label: str = ""
    kind: Optional[AccountKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "label": self.label,
            "kind": self.kind.value if self.kind else None,
            "amount": self.amount,
        }


@dataclass
class TaxRow:
    """Monthly tax total for one (tax, scenario); return amounts arrive negated."""
    period: str
    tax_name: str
    scenario: str
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LedgerRow:
    """Expense-ledger total per (group, category, month)."""
    period: str
    group: str
    category: str
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FinancialRevenueRow:
    """Financial revenue total per (parent category, category, month)."""
    period: str
    parent_code: str
    parent_label: str
    category_code: str
    category_label: str
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemDetail:
    """Per-product line of an invoice drill-down."""
    product: str
    invoice_count: int
    total: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExpenseDetail:
    """One payable title behind an expense cell."""
    entry_date: str
    supplier: str
    amount: float
    status: str
    note: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FinancialRevenueDetail:
    """One current-account posting behind a financial revenue cell."""
    entry_id: str
    posted_on: str
    amount: float
    note: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
