"""
UI-Facing Service Layer

Every entry point the dashboard calls: the year tree, the breakdown
pivots and the cell drill-downs. Parameters are validated before any I/O
and every failure comes back as a structured error with an HTTP-style
status; nothing raises into the caller.

Key Concepts:
- 4xx: malformed input or unsupported combination, fix the parameters
- 5xx: upstream or internal failure, retry the whole request
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from pnl_matrix.core.error_taxonomy import (
    BadRequestError,
    UnsupportedCombinationError,
    classify_error,
    log_classified,
)
from pnl_matrix.core.financial_semantics import (
    AccountKind,
    BreakdownDimension,
    COGS_KINDS,
    REVENUE_KINDS,
    TaxScenario,
    VOLUME_KINDS,
)
from pnl_matrix.core.observability import get_tracer
from pnl_matrix.core.reporting_calendar import current_year
from pnl_matrix.core.schemas import (
    BreakdownRequest,
    CellDetailRequest,
    ErrorBody,
    ExpenseDetailRequest,
    FinancialRevenueDetailRequest,
    ItemDetailRequest,
    TaxDetailRequest,
    YearTreeRequest,
    validate_request,
)
from pnl_matrix.data.breakdowns import BreakdownService
from pnl_matrix.data.pnl_builder import PnLBuilder
from pnl_matrix.tools.ledger_client import get_ledger_client
from pnl_matrix.tools.warehouse_client import get_warehouse_client

logger = logging.getLogger(__name__)

FAMILY_PERCENT = "family_percent"


@dataclass
class ServiceResponse:
    """Result of one entry point: data on success, a structured error otherwise."""
    status: int
    data: Any = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"status": self.status, "data": self.data}
        return {"status": self.status, "error": self.error}


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class PnLService:
    """
    Orchestrates the builder, the pivots and the detail fetchers for the UI.

    Usage:
        service = PnLService()
        response = await service.get_tree("2025")
        if response.ok:
            rows = response.data
    """

    def __init__(self, builder: Optional[PnLBuilder] = None,
                 breakdowns: Optional[BreakdownService] = None,
                 warehouse=None, ledger=None):
        self.warehouse = warehouse if warehouse is not None else get_warehouse_client()
        self.ledger = ledger if ledger is not None else get_ledger_client()
        self.builder = builder or PnLBuilder(warehouse=self.warehouse, ledger=self.ledger)
        self.breakdowns = breakdowns or BreakdownService(warehouse=self.warehouse)

    async def _respond(self, operation: str, work: Callable[[], Awaitable[Any]],
                       **attributes) -> ServiceResponse:
        """Run one request inside a trace, translating any failure into a structured error."""
        try:
            with get_tracer().start_trace(operation, channel="api", **attributes):
                data = await work()
        except asyncio.CancelledError:
            logger.info(f"{operation} cancelled {attributes}")
            raise
        except Exception as e:
            classified = classify_error(e, operation=operation, context=dict(attributes))
            log_classified(classified)
            body = ErrorBody(**classified.to_dict())
            return ServiceResponse(status=classified.http_status, error=body.model_dump())
        return ServiceResponse(status=200, data=data)

    # ==================== YEAR TREE ====================

    async def get_tree(self, year: Any = None) -> ServiceResponse:
        """Ordered statement rows; a wholly absent year means the current year."""
        async def work():
            raw = current_year() if _blank(year) else year
            request = validate_request(YearTreeRequest, {"year": raw})
            nodes = await self.builder.build(request.year)
            return [n.to_dict() for n in nodes]

        return await self._respond("build_year_tree", work, year=year)

    # ==================== BREAKDOWNS ====================

    @staticmethod
    def _breakdown_request(year: Any, kind: Any, allowed, family: str) -> BreakdownRequest:
        if _blank(year):
            raise BadRequestError(f"missing year for {family} breakdown")
        request = validate_request(BreakdownRequest, {"year": year, "kind": kind})
        if request.kind not in allowed:
            raise UnsupportedCombinationError(
                f"{family} breakdown not supported for kind: {request.kind.value}",
                context={"kind": request.kind.value},
            )
        return request

    async def get_breakdown(self, year: Any, kind: Any, dimension: Any) -> ServiceResponse:
        """Any kind, any dimension: the placeholder-expansion path."""
        async def work():
            try:
                parsed = BreakdownDimension(dimension)
            except ValueError:
                raise BadRequestError(f"unknown breakdown: {dimension!r}")
            request = self._breakdown_request(year, kind, tuple(AccountKind), parsed.value)
            nodes = await self.breakdowns.fetch(request.year, request.kind, parsed)
            return [n.to_dict() for n in nodes]

        return await self._respond("fetch_breakdown", work, year=year, kind=kind, dimension=dimension)

    async def fetch_family_breakdown(self, year: Any, kind: Any) -> ServiceResponse:
        return await self.get_breakdown(year, kind, BreakdownDimension.FAMILY.value)

    async def fetch_product_breakdown(self, year: Any, kind: Any) -> ServiceResponse:
        return await self.get_breakdown(year, kind, BreakdownDimension.PRODUCT.value)

    async def fetch_volume_family_breakdown(self, year: Any, kind: Any) -> ServiceResponse:
        return await self.get_breakdown(year, kind, BreakdownDimension.VOLUME_FAMILY.value)

    async def fetch_volume_product_breakdown(self, year: Any, kind: Any) -> ServiceResponse:
        return await self.get_breakdown(year, kind, BreakdownDimension.VOLUME_PRODUCT.value)

    # ==================== INVOICE ROUTES ====================

    async def revenue_details(self, ym: Any = None, kind: Any = None, year: Any = None,
                              breakdown: Any = None) -> ServiceResponse:
        """Revenue kinds: family/product pivot for a year, or item detail for a month."""
        return await self._invoice_details("revenue_details", REVENUE_KINDS, ym, kind, year, breakdown)

    async def cogs_details(self, ym: Any = None, kind: Any = None, year: Any = None,
                           breakdown: Any = None) -> ServiceResponse:
        """COGS kinds; breakdown=family_percent on CPV adds the share of family revenue."""
        return await self._invoice_details("cogs_details", COGS_KINDS, ym, kind, year, breakdown)

    async def _invoice_details(self, operation: str, allowed, ym, kind, year, breakdown) -> ServiceResponse:
        async def work():
            effective_year = year if not _blank(year) else (str(ym)[:4] if not _blank(ym) else None)

            if breakdown == FAMILY_PERCENT:
                request = self._breakdown_request(effective_year, kind, allowed, "family percent")
                if request.kind is not AccountKind.COGS:
                    raise UnsupportedCombinationError(
                        f"family percent breakdown not supported for kind: {request.kind.value}",
                        context={"kind": request.kind.value},
                    )
                nodes = await self.breakdowns.fetch_cogs_family_percent(request.year)
                return [n.to_dict() for n in nodes]

            if breakdown in (BreakdownDimension.FAMILY.value, BreakdownDimension.PRODUCT.value):
                dimension = BreakdownDimension(breakdown)
                request = self._breakdown_request(effective_year, kind, allowed, dimension.value)
                nodes = await self.breakdowns.fetch(request.year, request.kind, dimension)
                return [n.to_dict() for n in nodes]

            if not _blank(breakdown):
                raise BadRequestError(f"unknown breakdown: {breakdown!r}")

            request = validate_request(ItemDetailRequest, {"ym": ym, "kind": kind})
            if request.kind not in allowed:
                raise BadRequestError(f"bad params for item details: kind {request.kind.value}")
            rows = await asyncio.to_thread(self.warehouse.fetch_item_details, request.ym, request.kind)
            return [r.to_dict() for r in rows]

        return await self._respond(operation, work, ym=ym, kind=kind, year=year, breakdown=breakdown)

    async def volume_details(self, year: Any = None, kind: Any = None,
                             breakdown: Any = None) -> ServiceResponse:
        """Quantity pivots of gross revenue and returns."""
        async def work():
            dimensions = {
                BreakdownDimension.FAMILY.value: BreakdownDimension.VOLUME_FAMILY,
                BreakdownDimension.PRODUCT.value: BreakdownDimension.VOLUME_PRODUCT,
            }
            dimension = dimensions.get(breakdown)
            if dimension is None:
                raise BadRequestError(f"breakdown must be family or product, got {breakdown!r}")
            request = self._breakdown_request(year, kind, VOLUME_KINDS, "volume")
            nodes = await self.breakdowns.fetch(request.year, request.kind, dimension)
            return [n.to_dict() for n in nodes]

        return await self._respond("volume_details", work, year=year, kind=kind, breakdown=breakdown)

    # ==================== DRILL-DOWNS ====================

    async def tax_details(self, ym: Any = None, tax_name: Any = None, scenario: Any = None) -> ServiceResponse:
        async def work():
            request = validate_request(TaxDetailRequest, {"ym": ym, "tax_name": tax_name, "scenario": scenario})
            return await self._tax_rows(request)

        return await self._respond("tax_details", work, ym=ym, tax_name=tax_name, scenario=scenario)

    async def expense_details(self, ym: Any = None, code: Any = None, cat: Any = None) -> ServiceResponse:
        async def work():
            request = validate_request(ExpenseDetailRequest, {"ym": ym, "group": code, "category": cat})
            return await self._expense_rows(request)

        return await self._respond("expense_details", work, ym=ym, code=code, cat=cat)

    async def financial_revenue_details(self, year: Any = None, month: Any = None,
                                        cat_sup: Any = None, cat_desc: Any = None) -> ServiceResponse:
        async def work():
            request = validate_request(FinancialRevenueDetailRequest, {
                "year": year, "month": month, "parent_category": cat_sup, "category": cat_desc,
            })
            return await self._financial_revenue_rows(request)

        return await self._respond("financial_revenue_details", work,
                                   year=year, month=month, cat_sup=cat_sup, cat_desc=cat_desc)

    async def fetch_cell_detail(self, ym: Any, kind: Any, **dimension_key) -> ServiceResponse:
        """
        Generic drill-down for one (month, kind) cell.

        Args:
            ym: Month key
            kind: An AccountKind value, "tax", "expense" or "financial_revenue"
            dimension_key: tax_name/scenario, group/category or parent_category/category
        """
        async def work():
            request = validate_request(CellDetailRequest, {"ym": ym, "kind": kind, **dimension_key})
            specific = request.to_specific()
            if isinstance(specific, TaxDetailRequest):
                return await self._tax_rows(specific)
            if isinstance(specific, ExpenseDetailRequest):
                return await self._expense_rows(specific)
            if isinstance(specific, FinancialRevenueDetailRequest):
                return await self._financial_revenue_rows(specific)
            rows = await asyncio.to_thread(self.warehouse.fetch_item_details, specific.ym, specific.kind)
            return [r.to_dict() for r in rows]

        return await self._respond("fetch_cell_detail", work, ym=ym, kind=kind)

    async def _tax_rows(self, request: TaxDetailRequest):
        rows = await asyncio.to_thread(
            self.warehouse.fetch_tax_details, request.ym, request.tax_name, TaxScenario(request.scenario),
        )
        return [r.to_dict() for r in rows]

    async def _expense_rows(self, request: ExpenseDetailRequest):
        rows = await asyncio.to_thread(
            self.ledger.fetch_expense_details, request.ym, request.group, request.category,
        )
        return [r.to_dict() for r in rows]

    async def _financial_revenue_rows(self, request: FinancialRevenueDetailRequest):
        rows = await asyncio.to_thread(
            self.ledger.fetch_financial_revenue_details, request.ym, request.parent_category, request.category,
        )
        return [r.to_dict() for r in rows]


# Global service instance
_service: Optional[PnLService] = None


def get_pnl_service() -> PnLService:
    """Get the process-wide service."""
    global _service
    if _service is None:
        _service = PnLService()
    return _service


def reset_pnl_service():
    """Reset the global service (for testing)."""
    global _service
    _service = None
