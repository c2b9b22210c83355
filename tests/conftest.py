"""
Shared fixtures: in-memory stand-ins for the warehouse and the ledger.

The fakes expose the same synchronous methods as WarehouseClient and
LedgerClient and record every detail call, so tests can assert on the
parameters that reached the store.
"""
from typing import Dict, List, Tuple

import pytest

from pnl_matrix.api.service import reset_pnl_service
from pnl_matrix.core.error_taxonomy import DataRetrievalError, UnsupportedCombinationError
from pnl_matrix.core.financial_semantics import (
    AccountKind,
    BreakdownDimension,
    TaxScenario,
    VOLUME_KINDS,
)
from pnl_matrix.core.observability import reset_tracer
from pnl_matrix.core.records import (
    AggregateRow,
    ExpenseDetail,
    FinancialRevenueDetail,
    FinancialRevenueRow,
    ItemDetail,
    LedgerRow,
    TaxRow,
)
from pnl_matrix.data.corrections import CorrectionOverlay, reset_correction_overlay
from pnl_matrix.tools.ledger_client import reset_ledger_client
from pnl_matrix.tools.warehouse_client import reset_warehouse_client


class FakeWarehouse:
    """Warehouse returning preset rows; a name in `failing` raises DataRetrievalError."""

    def __init__(self):
        self.revenue_lines: List[AggregateRow] = []
        self.cogs_lines: List[AggregateRow] = []
        self.revenue_taxes: List[TaxRow] = []
        self.st_taxes: List[TaxRow] = []
        self.interest_income: List[AggregateRow] = []
        self.breakdowns: Dict[Tuple[AccountKind, BreakdownDimension], List[AggregateRow]] = {}
        self.item_details: List[ItemDetail] = [ItemDetail(product="Widget", invoice_count=3, total=120.0)]
        self.failing: set = set()
        self.calls: List[tuple] = []

    def _check(self, name: str):
        if name in self.failing:
            raise DataRetrievalError(f"Warehouse query {name} failed: boom", source="warehouse")

    def fetch_revenue_lines(self, year: int) -> List[AggregateRow]:
        self._check("fetch_revenue_lines")
        return list(self.revenue_lines)

    def fetch_cogs_lines(self, year: int) -> List[AggregateRow]:
        self._check("fetch_cogs_lines")
        return list(self.cogs_lines)

    def fetch_revenue_taxes(self, year: int) -> List[TaxRow]:
        self._check("fetch_revenue_taxes")
        return list(self.revenue_taxes)

    def fetch_st_taxes(self, year: int) -> List[TaxRow]:
        self._check("fetch_st_taxes")
        return list(self.st_taxes)

    def fetch_interest_income(self, year: int) -> List[AggregateRow]:
        self._check("fetch_interest_income")
        return list(self.interest_income)

    def fetch_breakdown(self, year: int, kind: AccountKind, dimension: BreakdownDimension) -> List[AggregateRow]:
        self.calls.append(("fetch_breakdown", year, kind, dimension))
        self._check("fetch_breakdown")
        if dimension.is_volume and kind not in VOLUME_KINDS:
            raise UnsupportedCombinationError(f"{dimension.value} breakdown not supported for kind {kind.value}")
        return list(self.breakdowns.get((kind, dimension), []))

    def fetch_item_details(self, ym: str, kind: AccountKind) -> List[ItemDetail]:
        self.calls.append(("fetch_item_details", ym, kind))
        self._check("fetch_item_details")
        return list(self.item_details)

    def fetch_tax_details(self, ym: str, tax_name: str, scenario: TaxScenario) -> List[ItemDetail]:
        self.calls.append(("fetch_tax_details", ym, tax_name, scenario))
        self._check("fetch_tax_details")
        return list(self.item_details)


class FakeLedger:
    """Ledger returning preset rows."""

    def __init__(self):
        self.expenses: List[LedgerRow] = []
        self.tax_expenses: List[LedgerRow] = []
        self.financial_revenue: List[FinancialRevenueRow] = []
        self.failing: set = set()
        self.calls: List[tuple] = []

    def _check(self, name: str):
        if name in self.failing:
            raise DataRetrievalError(f"Ledger query {name} failed: boom", source="ledger")

    def fetch_expenses(self, year: int) -> List[LedgerRow]:
        self._check("fetch_expenses")
        return list(self.expenses)

    def fetch_tax_expenses(self, year: int) -> List[LedgerRow]:
        self._check("fetch_tax_expenses")
        return list(self.tax_expenses)

    def fetch_financial_revenue(self, year: int) -> List[FinancialRevenueRow]:
        self._check("fetch_financial_revenue")
        return list(self.financial_revenue)

    def fetch_expense_details(self, ym: str, group: str, category: str) -> List[ExpenseDetail]:
        self.calls.append(("fetch_expense_details", ym, group, category))
        return [ExpenseDetail(entry_date="2025-01-10", supplier="ACME", amount=99.9, status="Pago", note="")]

    def fetch_financial_revenue_details(self, ym: str, parent_label: str,
                                        category_label: str) -> List[FinancialRevenueDetail]:
        self.calls.append(("fetch_financial_revenue_details", ym, parent_label, category_label))
        return [FinancialRevenueDetail(entry_id="42", posted_on="2025-03-05", amount=12.0, note="CDB")]


@pytest.fixture(autouse=True)
def _isolated_globals(monkeypatch):
    """No JSON trace files and no process-wide clients shared between tests."""
    monkeypatch.delenv("TRACE_EXPORT_DIR", raising=False)
    resets = (reset_tracer, reset_pnl_service, reset_warehouse_client, reset_ledger_client, reset_correction_overlay)
    for reset in resets:
        reset()
    yield
    for reset in resets:
        reset()


@pytest.fixture
def warehouse() -> FakeWarehouse:
    return FakeWarehouse()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def no_corrections() -> CorrectionOverlay:
    return CorrectionOverlay.from_dict({})
