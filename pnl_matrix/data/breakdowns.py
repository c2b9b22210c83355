"""
Breakdown Pivots

Re-aggregation of one statement line by family or product, fetched on
demand when a "Familia"/"Produto" row is expanded.

Key Concepts:
- Family and product rows share NodeKind.FAMILY; ids carry "_fam_" or "_prod_"
- Product labels are normalized before grouping, so "FS - Widget (KG)" and
  "Widget" become one row
- The COGS family pivot interleaves a %-of-revenue row after each family;
  both source pivots are awaited together and published as one result
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from pnl_matrix.core.financial_semantics import (
    AccountKind,
    AccountLine,
    BreakdownDimension,
)
from pnl_matrix.core.labels import (
    normalize_product_label,
    normalize_volume_label,
    slugify,
    sort_key,
)
from pnl_matrix.core.nodes import BreakdownRef, NodeKind, PnLNode
from pnl_matrix.core.records import AggregateRow
from pnl_matrix.core.reporting_calendar import MonthSeries, empty_year, month_keys
from pnl_matrix.data.corrections import (
    CorrectionOverlay,
    breakdown_concept_key,
    get_correction_overlay,
)
from pnl_matrix.data.pnl_builder import percent_of_gross_id
from pnl_matrix.tools.calculator import get_calculator
from pnl_matrix.tools.warehouse_client import get_warehouse_client

logger = logging.getLogger(__name__)

_VOLUME_PARENTS: Dict[AccountKind, AccountLine] = {
    AccountKind.GROSS_REVENUE: AccountLine.GROSS_REVENUE_VOLUME,
    AccountKind.RETURNS: AccountLine.RETURNS_VOLUME,
}


def _label_normalizer(dimension: BreakdownDimension) -> Callable[[str], str]:
    if dimension is BreakdownDimension.PRODUCT:
        return normalize_product_label
    if dimension is BreakdownDimension.VOLUME_PRODUCT:
        return normalize_volume_label
    return lambda label: label


def breakdown_parent_id(kind: AccountKind, dimension: BreakdownDimension) -> str:
    """Line a breakdown hangs under: the amount line, or the volume line for quantities."""
    if dimension.is_volume:
        return _VOLUME_PARENTS[kind].value
    return kind.line.value


def pivot(rows: List[AggregateRow], parent_id: str, year: int,
          dimension: BreakdownDimension = BreakdownDimension.FAMILY) -> List[PnLNode]:
    """
    Group rows by label and sum per month.

    Args:
        rows: Labelled monthly rows of one kind
        parent_id: Id of the line the result hangs under
        year: Year whose months make up every node's values
        dimension: Decides label normalization and the id infix

    Returns:
        One FAMILY node per label, sorted alphabetically ignoring case and accents
    """
    normalize = _label_normalizer(dimension)
    infix = "prod" if dimension.is_product else "fam"
    by_label: Dict[str, PnLNode] = {}

    for row in rows:
        if row.label is None:
            continue
        label = normalize(row.label)
        node = by_label.get(label)
        if node is None:
            node = by_label[label] = PnLNode(
                id=f"{parent_id}_{infix}_{slugify(label)}",
                parent_id=parent_id,
                label=label,
                kind=NodeKind.FAMILY,
                values=empty_year(year),
            )
        if row.period in node.values:
            node.values[row.period] += row.amount

    return sorted(by_label.values(), key=lambda n: sort_key(n.label))


def pivot_families(rows: List[AggregateRow], parent_id: str, year: int) -> List[PnLNode]:
    return pivot(rows, parent_id, year, BreakdownDimension.FAMILY)


def pivot_products(rows: List[AggregateRow], parent_id: str, year: int) -> List[PnLNode]:
    return pivot(rows, parent_id, year, BreakdownDimension.PRODUCT)


def pivot_cogs_family_percent(cogs_rows: List[AggregateRow], revenue_rows: List[AggregateRow],
                              year: int) -> List[PnLNode]:
    """
    COGS families, each followed by its COGS / family gross revenue x 100 row.

    Families match on exact label; a family with no revenue gets 0.
    """
    months = month_keys(year)
    parent_id = AccountLine.COGS.value
    revenue_by_family: Dict[str, MonthSeries] = {
        node.label: node.values for node in pivot_families(revenue_rows, parent_id, year)
    }

    calc = get_calculator()
    result: List[PnLNode] = []
    for family in pivot_families(cogs_rows, parent_id, year):
        result.append(family)
        result.append(PnLNode(
            id=percent_of_gross_id(family.id),
            parent_id=family.parent_id,
            label="",
            kind=NodeKind.DETAIL_PERCENTAGE,
            values=calc.ratio_series(months, family.values, revenue_by_family.get(family.label, {})),
        ))
    return result


# ==================== ON-DEMAND ENTRY POINTS ====================

class BreakdownService:
    """
    Fetches, corrects and pivots breakdowns.

    Usage:
        service = BreakdownService()
        nodes = await service.fetch(2025, AccountKind.COGS, BreakdownDimension.PRODUCT)
    """

    def __init__(self, warehouse=None, corrections: Optional[CorrectionOverlay] = None):
        self.warehouse = warehouse if warehouse is not None else get_warehouse_client()
        self.corrections = corrections if corrections is not None else get_correction_overlay()

    async def _rows(self, year: int, kind: AccountKind, dimension: BreakdownDimension) -> List[AggregateRow]:
        rows = await asyncio.to_thread(self.warehouse.fetch_breakdown, year, kind, dimension)
        return self.corrections.apply(breakdown_concept_key(kind, dimension), year, rows)

    async def fetch(self, year: int, kind: AccountKind, dimension: BreakdownDimension) -> List[PnLNode]:
        """
        Pivoted breakdown of one kind.

        Raises:
            UnsupportedCombinationError: Quantity dimension on a kind without volumes
            DataRetrievalError: If the warehouse query fails
        """
        rows = await self._rows(year, kind, dimension)
        nodes = pivot(rows, breakdown_parent_id(kind, dimension), year, dimension)
        logger.debug(f"{dimension.value} breakdown of {kind.value} for {year}: {len(nodes)} rows")
        return nodes

    async def fetch_cogs_family_percent(self, year: int) -> List[PnLNode]:
        """COGS families with their share of same-family gross revenue, fetched together."""
        cogs_rows, revenue_rows = await asyncio.gather(
            self._rows(year, AccountKind.COGS, BreakdownDimension.FAMILY),
            self._rows(year, AccountKind.GROSS_REVENUE, BreakdownDimension.FAMILY),
        )
        return pivot_cogs_family_percent(cogs_rows, revenue_rows, year)

    async def resolve(self, ref: BreakdownRef, year: int) -> List[PnLNode]:
        """Children of a breakdown placeholder."""
        if ref.kind is AccountKind.COGS and ref.dimension is BreakdownDimension.FAMILY:
            return await self.fetch_cogs_family_percent(year)
        return await self.fetch(year, ref.kind, ref.dimension)


async def fetch_family_breakdown(year: int, kind: AccountKind,
                                 service: Optional[BreakdownService] = None) -> List[PnLNode]:
    return await (service or BreakdownService()).fetch(year, kind, BreakdownDimension.FAMILY)


async def fetch_product_breakdown(year: int, kind: AccountKind,
                                  service: Optional[BreakdownService] = None) -> List[PnLNode]:
    return await (service or BreakdownService()).fetch(year, kind, BreakdownDimension.PRODUCT)


async def fetch_volume_family_breakdown(year: int, kind: AccountKind,
                                        service: Optional[BreakdownService] = None) -> List[PnLNode]:
    return await (service or BreakdownService()).fetch(year, kind, BreakdownDimension.VOLUME_FAMILY)


async def fetch_volume_product_breakdown(year: int, kind: AccountKind,
                                         service: Optional[BreakdownService] = None) -> List[PnLNode]:
    return await (service or BreakdownService()).fetch(year, kind, BreakdownDimension.VOLUME_PRODUCT)
