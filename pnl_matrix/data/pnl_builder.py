"""
P&L Tree Builder

Turns one year of aggregates from the warehouse and the ledger into the
ordered statement rows rendered by the matrix.

This module handles:
1. Concurrent retrieval of every top-level aggregate
2. Correction overlay merge, once per concept
3. Line, tax-tree, COGS and expense-group nodes
4. The intermediate chain (margins, operating income, EBITDA, net profit)
5. CSLL/IRPJ provisions with the posted-amount fallback
6. Presentation order

Key Concepts:
- Gross revenue (line "1") is stored net of returns
- Returns-scenario tax children and COGS returns are deductions already,
  so formulas add them back where noted
- Any failing fetch aborts the whole build; there is no partial tree
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from pnl_matrix.core.financial_semantics import (
    AccountKind,
    AccountLine,
    COGS_KINDS,
    CSLL_MARKER,
    Concept,
    DUPLICATE_TAX_CATEGORIES,
    DUPLICATE_TAX_PREFIX,
    EBITDA_GROUPS,
    ExpenseGroup,
    INTEREST_INCOME_LABEL,
    IPI_TAX_NAME,
    IRPJ_MARKER,
    LINE_LABELS,
    PERCENT_OF_GROSS_GROUPS,
    POSITIONED_GROUPS,
    REVENUE_KINDS,
    SERVICE_REVENUE_CODE,
    TAXABLE_FINANCIAL_PARENT_CODE,
    TaxScenario,
)
from pnl_matrix.core.nodes import NodeKind, PnLNode, Sign
from pnl_matrix.core.observability import SpanKind, get_tracer
from pnl_matrix.core.records import AggregateRow, FinancialRevenueRow, LedgerRow, TaxRow
from pnl_matrix.core.reporting_calendar import MonthSeries, empty_year, month_keys
from pnl_matrix.data.corrections import CorrectionOverlay, get_correction_overlay
from pnl_matrix.tools.calculator import PnLCalculator, get_calculator
from pnl_matrix.tools.ledger_client import get_ledger_client
from pnl_matrix.tools.warehouse_client import get_warehouse_client

logger = logging.getLogger(__name__)

GROUP_PREFIX = "grp_"
SUB_PREFIX = "sub_"
PERCENT_OF_GROSS_SUFFIX = "_percGross"


def group_node_id(group_label: str) -> str:
    return f"{GROUP_PREFIX}{group_label}"


def sub_node_id(group_label: str, category: str) -> str:
    return f"{SUB_PREFIX}{group_label}__{category}"


def percent_of_gross_id(parent_id: str) -> str:
    return f"{parent_id}{PERCENT_OF_GROSS_SUFFIX}"


def is_ignored_tax_expense(row: LedgerRow) -> bool:
    """Revenue taxes booked again under the disregarded group."""
    if row.group != ExpenseGroup.DISREGARDED.value:
        return False
    category = row.category.strip().upper()
    if category in DUPLICATE_TAX_CATEGORIES:
        return True
    return category.startswith(DUPLICATE_TAX_PREFIX)


def is_income_tax_category(category: str) -> bool:
    return CSLL_MARKER in category or IRPJ_MARKER in category


@dataclass
class YearAggregates:
    """Every top-level aggregate of one year, corrections already merged."""
    revenue_lines: List[AggregateRow] = field(default_factory=list)
    cogs_lines: List[AggregateRow] = field(default_factory=list)
    revenue_taxes: List[TaxRow] = field(default_factory=list)
    st_taxes: List[TaxRow] = field(default_factory=list)
    expenses: List[LedgerRow] = field(default_factory=list)
    tax_expenses: List[LedgerRow] = field(default_factory=list)
    financial_revenue: List[FinancialRevenueRow] = field(default_factory=list)
    interest_income: List[AggregateRow] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return sum(len(rows) for rows in (
            self.revenue_lines, self.cogs_lines, self.revenue_taxes, self.st_taxes,
            self.expenses, self.tax_expenses, self.financial_revenue, self.interest_income,
        ))


class PnLBuilder:
    """
    Builds the statement for one year.

    Stateless between calls: every build fetches fresh aggregates, so
    concurrent builds for different years never share anything.

    Usage:
        builder = PnLBuilder()
        nodes = await builder.build(2025)
    """

    def __init__(self, warehouse=None, ledger=None,
                 corrections: Optional[CorrectionOverlay] = None,
                 calculator: Optional[PnLCalculator] = None):
        self.warehouse = warehouse if warehouse is not None else get_warehouse_client()
        self.ledger = ledger if ledger is not None else get_ledger_client()
        self.corrections = corrections if corrections is not None else get_correction_overlay()
        self.calculator = calculator or get_calculator()

    # ==================== RETRIEVAL ====================

    async def fetch_aggregates(self, year: int) -> YearAggregates:
        """Fetch all top-level aggregates concurrently and merge corrections."""
        (
            revenue_lines, cogs_lines, revenue_taxes, st_taxes,
            expenses, tax_expenses, financial_revenue, interest_income,
        ) = await asyncio.gather(
            asyncio.to_thread(self.warehouse.fetch_revenue_lines, year),
            asyncio.to_thread(self.warehouse.fetch_cogs_lines, year),
            asyncio.to_thread(self.warehouse.fetch_revenue_taxes, year),
            asyncio.to_thread(self.warehouse.fetch_st_taxes, year),
            asyncio.to_thread(self.ledger.fetch_expenses, year),
            asyncio.to_thread(self.ledger.fetch_tax_expenses, year),
            asyncio.to_thread(self.ledger.fetch_financial_revenue, year),
            asyncio.to_thread(self.warehouse.fetch_interest_income, year),
        )

        overlay = self.corrections
        return YearAggregates(
            revenue_lines=self._apply_per_kind(REVENUE_KINDS, revenue_lines, year),
            cogs_lines=self._apply_per_kind(COGS_KINDS, cogs_lines, year),
            revenue_taxes=overlay.apply(Concept.REVENUE_TAXES, year, revenue_taxes),
            st_taxes=overlay.apply(Concept.ST_TAXES, year, st_taxes),
            expenses=overlay.apply(Concept.EXPENSES, year, expenses),
            tax_expenses=overlay.apply(Concept.TAX_EXPENSES, year, tax_expenses),
            financial_revenue=overlay.apply(Concept.FINANCIAL_REVENUE, year, financial_revenue),
            interest_income=overlay.apply(Concept.INTEREST_INCOME, year, interest_income),
        )

    def _apply_per_kind(self, kinds, rows: List[AggregateRow], year: int) -> List[AggregateRow]:
        """Union fetchers return several kinds; each kind is its own concept."""
        merged: List[AggregateRow] = []
        for kind in kinds:
            own = [r for r in rows if r.kind is kind]
            merged.extend(self.corrections.apply(kind.concept, year, own))
        return merged

    # ==================== BUILD ====================

    async def build(self, year: int) -> List[PnLNode]:
        """
        Build the ordered statement rows for a year.

        Raises:
            DataRetrievalError: If any backing-store fetch fails
        """
        start = time.monotonic()
        logger.info(f"Building P&L for {year}")

        aggregates = await self.fetch_aggregates(year)
        with get_tracer().start_span("assemble_tree", SpanKind.CALCULATION, {"year": year}):
            nodes = self.assemble(year, aggregates)

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            f"Built P&L for {year}: {len(nodes)} rows from {aggregates.row_count} "
            f"source rows in {elapsed_ms:.0f}ms"
        )
        return nodes

    def assemble(self, year: int, aggregates: YearAggregates) -> List[PnLNode]:
        """Pure tree construction from already-fetched aggregates."""
        months = month_keys(year)
        calc = self.calculator

        # Revenue lines
        lines = self._line_nodes(year, aggregates.revenue_lines, REVENUE_KINDS, {
            AccountKind.GROSS_REVENUE: Sign.PLUS,
            AccountKind.RETURNS: Sign.MINUS,
            AccountKind.DISCOUNT: Sign.MINUS,
        })
        gross = lines[AccountLine.GROSS_REVENUE]
        returns = lines[AccountLine.RETURNS]
        discount = lines[AccountLine.DISCOUNT]
        for m in months:
            gross.values[m] -= returns.values[m]

        revenue_tax_nodes = self._tax_tree(year, AccountLine.REVENUE_TAXES, aggregates.revenue_taxes)
        st_tax_nodes = self._tax_tree(year, AccountLine.ST_TAXES, aggregates.st_taxes)
        tax_root = revenue_tax_nodes[0]

        net = self._node(AccountLine.NET_REVENUE, calc.combine(months, [
            (1, gross.values), (-1, tax_root.values), (-1, discount.values),
        ]), sign=Sign.PLUS, kind=NodeKind.INTERMEDIATE)

        # COGS lines
        lines.update(self._line_nodes(year, aggregates.cogs_lines, COGS_KINDS, {
            AccountKind.COGS: Sign.PLUS,
            AccountKind.COGS_BONUS: Sign.PLUS,
            AccountKind.COGS_LOSS: Sign.PLUS,
            AccountKind.COGS_RETURN: Sign.MINUS,
        }))

        groups, subs = self._expense_nodes(year, aggregates.expenses)

        def group_values(group: ExpenseGroup) -> Optional[MonthSeries]:
            node = groups.get(group.value)
            return node.values if node else None

        # Intermediate chain, strictly in dependency order
        margin = self._node(AccountLine.NET_REVENUE_MARGIN,
                            calc.ratio_series(months, net.values, gross.values), kind=NodeKind.PERCENTAGE)
        operating = self._node(AccountLine.OPERATING_INCOME, calc.combine(months, [
            (1, net.values),
            (-1, lines[AccountLine.COGS].values),
            (-1, lines[AccountLine.COGS_BONUS].values),
            (-1, lines[AccountLine.COGS_LOSS].values),
            (1, lines[AccountLine.COGS_RETURN].values),
        ]), kind=NodeKind.INTERMEDIATE)
        operating_margin = self._node(AccountLine.OPERATING_MARGIN,
                                      calc.ratio_series(months, operating.values, gross.values),
                                      kind=NodeKind.PERCENTAGE)
        gross_profit = self._node(AccountLine.GROSS_PROFIT, calc.combine(months, [
            (1, operating.values), (-1, group_values(ExpenseGroup.OPERATING)),
        ]), kind=NodeKind.INTERMEDIATE)
        gross_profit_margin = self._node(AccountLine.GROSS_PROFIT_MARGIN,
                                         calc.ratio_series(months, gross_profit.values, gross.values),
                                         kind=NodeKind.PERCENTAGE)
        ebitda = self._node(AccountLine.EBITDA, calc.combine(
            months, [(1, operating.values)] + [(-1, group_values(g)) for g in EBITDA_GROUPS],
        ), kind=NodeKind.INTERMEDIATE)
        ebitda_margin = self._node(AccountLine.EBITDA_MARGIN,
                                   calc.ratio_series(months, ebitda.values, net.values),
                                   kind=NodeKind.PERCENTAGE)
        net_profit = self._node(AccountLine.NET_PROFIT, calc.combine(months, [
            (1, ebitda.values),
            (-1, group_values(ExpenseGroup.FINANCIAL)),
            (-1, group_values(ExpenseGroup.TAXES)),
        ]), kind=NodeKind.INTERMEDIATE)
        net_profit_margin = self._node(AccountLine.NET_PROFIT_MARGIN,
                                       calc.ratio_series(months, net_profit.values, net.values),
                                       kind=NodeKind.PERCENTAGE)

        financial_revenue, financial_total = self._financial_revenue_node(
            year, aggregates.financial_revenue, aggregates.interest_income,
        )
        income_taxes, income_tax_children = self._income_tax_nodes(
            year, gross.values, aggregates.tax_expenses, aggregates.financial_revenue,
        )

        # Net profit closes with financial revenue and income taxes, then its margin is redone
        net_profit.values = calc.combine(months, [
            (1, net_profit.values), (1, financial_total), (-1, income_taxes.values),
        ])
        net_profit_margin.values = calc.ratio_series(months, net_profit.values, net.values)

        # Percent-of-gross siblings
        percent_rows: Dict[str, PnLNode] = {}
        percent_parents = [tax_root, discount] + [
            groups[g.value] for g in PERCENT_OF_GROSS_GROUPS if g.value in groups
        ] + [lines[line] for line in (
            AccountLine.COGS, AccountLine.COGS_BONUS, AccountLine.COGS_LOSS, AccountLine.COGS_RETURN,
        )]
        for parent in percent_parents:
            percent_rows[parent.id] = self._percent_of_gross(parent, gross, months)

        volume_revenue = self._node(AccountLine.GROSS_REVENUE_VOLUME, empty_year(year), kind=NodeKind.VOLUME_PARENT)
        volume_returns = self._node(AccountLine.RETURNS_VOLUME, empty_year(year), kind=NodeKind.VOLUME_PARENT)

        def with_percent(node: PnLNode) -> List[PnLNode]:
            return [node] + ([percent_rows[node.id]] if node.id in percent_rows else [])

        def positioned(group: ExpenseGroup) -> Optional[PnLNode]:
            return groups.get(group.value)

        positioned_labels = {g.value for g in POSITIONED_GROUPS}
        main_groups = [node for label, node in groups.items() if label not in positioned_labels]

        ordered: List[PnLNode] = [
            gross, volume_revenue, returns, volume_returns,
            *with_percent(tax_root), *revenue_tax_nodes[1:],
            *st_tax_nodes,
            *with_percent(discount),
            net, margin,
        ]
        for line in (AccountLine.COGS, AccountLine.COGS_BONUS, AccountLine.COGS_LOSS, AccountLine.COGS_RETURN):
            ordered.extend(with_percent(lines[line]))
        ordered.extend([operating, operating_margin])
        if positioned(ExpenseGroup.OPERATING):
            ordered.extend(with_percent(positioned(ExpenseGroup.OPERATING)))
        ordered.extend([gross_profit, gross_profit_margin])
        if positioned(ExpenseGroup.IMPORT):
            ordered.extend(with_percent(positioned(ExpenseGroup.IMPORT)))
        for group in main_groups:
            ordered.extend(with_percent(group))
        ordered.extend([ebitda, ebitda_margin])
        if positioned(ExpenseGroup.FINANCIAL):
            ordered.extend(with_percent(positioned(ExpenseGroup.FINANCIAL)))
            ordered.append(financial_revenue)
        if positioned(ExpenseGroup.TAXES):
            ordered.append(positioned(ExpenseGroup.TAXES))
        ordered.append(income_taxes)
        ordered.extend(income_tax_children)
        ordered.extend([net_profit, net_profit_margin])
        if positioned(ExpenseGroup.DISREGARDED):
            ordered.append(positioned(ExpenseGroup.DISREGARDED))
        ordered.extend(subs)
        return ordered

    # ==================== NODE FACTORIES ====================

    @staticmethod
    def _node(line: AccountLine, values: MonthSeries, sign: Optional[Sign] = None,
              kind: NodeKind = NodeKind.PLAIN, parent: Optional[AccountLine] = None) -> PnLNode:
        return PnLNode(
            id=line.value,
            label=LINE_LABELS[line],
            values=values,
            parent_id=parent.value if parent else None,
            sign=sign,
            kind=kind,
        )

    def _line_nodes(self, year: int, rows: List[AggregateRow], kinds,
                    signs: Dict[AccountKind, Sign]) -> Dict[AccountLine, PnLNode]:
        """One node per kind, summed per month of the year."""
        nodes = {kind.line: self._node(kind.line, empty_year(year), sign=signs[kind]) for kind in kinds}
        for row in rows:
            if row.kind is None or row.kind.line not in nodes:
                continue
            node = nodes[row.kind.line]
            if row.period in node.values:
                node.values[row.period] += row.amount
        return nodes

    def _tax_tree(self, year: int, root_line: AccountLine, rows: List[TaxRow]) -> List[PnLNode]:
        """
        Root plus one child per (tax, scenario).

        IPI rows of every scenario collapse into a single child placed right
        under the root; IPI does not accumulate into the root.

        Returns:
            [root, IPI child if any, other children in first-seen order]
        """
        root = self._node(root_line, empty_year(year), sign=Sign.MINUS)
        children: Dict[str, PnLNode] = {}

        for row in rows:
            if row.period not in root.values:
                continue
            is_ipi = row.tax_name == IPI_TAX_NAME
            child_id = AccountLine.IPI.value if is_ipi else f"{root.id}_{row.tax_name}_{row.scenario}"
            child = children.get(child_id)
            if child is None:
                if is_ipi:
                    child = self._node(AccountLine.IPI, empty_year(year), sign=Sign.MINUS, parent=root_line)
                else:
                    suffix = "" if row.scenario == TaxScenario.SALE.value else row.scenario
                    child = PnLNode(
                        id=child_id,
                        parent_id=root.id,
                        label=f"{row.tax_name} {suffix}".strip(),
                        sign=Sign.MINUS if row.scenario == TaxScenario.RETURN.value else Sign.PLUS,
                        values=empty_year(year),
                    )
                children[child_id] = child

            child.values[row.period] += row.amount
            if not is_ipi:
                root.values[row.period] += row.amount

        ipi = [c for c in children.values() if c.id == AccountLine.IPI.value]
        others = [c for c in children.values() if c.id != AccountLine.IPI.value]
        return [root, *ipi, *others]

    def _expense_nodes(self, year: int,
                       rows: List[LedgerRow]) -> Tuple[Dict[str, PnLNode], List[PnLNode]]:
        """
        Expense groups keyed by group label, plus their category children.

        Duplicate revenue taxes under the disregarded group and CSLL/IRPJ
        categories are skipped; income taxes have their own path.
        """
        groups: Dict[str, PnLNode] = {}
        subs: Dict[str, PnLNode] = {}

        for row in rows:
            if is_ignored_tax_expense(row):
                continue
            if not row.group or not row.category:
                continue
            if is_income_tax_category(row.category):
                continue

            group = groups.get(row.group)
            if group is None:
                group = groups[row.group] = PnLNode(
                    id=group_node_id(row.group), label=row.group,
                    sign=Sign.MINUS, values=empty_year(year),
                )
            sub_id = sub_node_id(row.group, row.category)
            sub = subs.get(sub_id)
            if sub is None:
                sub = subs[sub_id] = PnLNode(
                    id=sub_id, parent_id=group.id, label=row.category,
                    sign=Sign.MINUS, values=empty_year(year),
                )
            if row.period in group.values:
                group.values[row.period] += row.amount
                sub.values[row.period] += row.amount

        return groups, list(subs.values())

    def _percent_of_gross(self, parent: PnLNode, gross: PnLNode, months: List[str]) -> PnLNode:
        return PnLNode(
            id=percent_of_gross_id(parent.id),
            label="",
            kind=NodeKind.DETAIL_PERCENTAGE,
            values=self.calculator.ratio_series(months, parent.values, gross.values),
        )

    def _financial_revenue_node(self, year: int, rows: List[FinancialRevenueRow],
                                interest: List[AggregateRow]) -> Tuple[PnLNode, MonthSeries]:
        """
        Financial revenue group with its sub-groups in meta.

        Interest and penalties collected on invoices join as their own
        sub-group, without categories.
        """
        total = empty_year(year)
        by_parent: Dict[str, Dict] = {}

        for row in rows:
            if row.period not in total:
                continue
            total[row.period] += row.amount
            parent = by_parent.setdefault(row.parent_label, {"vals": empty_year(year), "cats": {}})
            parent["vals"][row.period] += row.amount
            category = parent["cats"].setdefault(row.category_label, empty_year(year))
            category[row.period] += row.amount

        interest_values = empty_year(year)
        for row in interest:
            if row.period in interest_values:
                interest_values[row.period] += row.amount
                total[row.period] += row.amount
        by_parent[INTEREST_INCOME_LABEL] = {"vals": interest_values, "cats": {}}

        node = PnLNode(
            id=AccountLine.FINANCIAL_REVENUE.value,
            label=LINE_LABELS[AccountLine.FINANCIAL_REVENUE],
            values=total,
            kind=NodeKind.GROUP,
            meta={
                "frBySup": [
                    {
                        "supLabel": label,
                        "vals": group["vals"],
                        "cats": [{"catLabel": cat, "vals": vals} for cat, vals in group["cats"].items()],
                    }
                    for label, group in by_parent.items()
                ]
            },
        )
        return node, dict(total)

    def _income_tax_nodes(self, year: int, gross: MonthSeries, tax_expenses: List[LedgerRow],
                          financial_revenue: List[FinancialRevenueRow]) -> Tuple[PnLNode, List[PnLNode]]:
        """
        CSLL and IRPJ: posted, provisioned and considered amounts.

        Considered = posted when non-zero for the month, else provision,
        decided per tax per month.
        """
        csll_posted, irpj_posted = empty_year(year), empty_year(year)
        for row in tax_expenses:
            if row.period not in csll_posted:
                continue
            if CSLL_MARKER in row.category:
                csll_posted[row.period] += row.amount
            elif IRPJ_MARKER in row.category:
                irpj_posted[row.period] += row.amount

        service, taxable_financial = empty_year(year), empty_year(year)
        for row in financial_revenue:
            if row.period not in service:
                continue
            if row.category_code == SERVICE_REVENUE_CODE:
                service[row.period] += row.amount
            elif row.parent_code == TAXABLE_FINANCIAL_PARENT_CODE:
                taxable_financial[row.period] += row.amount

        calc = self.calculator
        csll_provision, irpj_provision = empty_year(year), empty_year(year)
        csll_considered, irpj_considered = empty_year(year), empty_year(year)
        for m in csll_posted:
            csll_provision[m] = calc.csll_provision(gross[m], service[m], taxable_financial[m]).value
            irpj_provision[m] = calc.irpj_provision(gross[m], service[m], taxable_financial[m]).value
            csll_considered[m] = calc.considered(csll_posted[m], csll_provision[m])
            irpj_considered[m] = calc.considered(irpj_posted[m], irpj_provision[m])

        root = self._node(AccountLine.INCOME_TAXES, calc.combine(list(csll_posted), [
            (1, csll_considered), (1, irpj_considered),
        ]), sign=Sign.MINUS)

        def child(line: AccountLine, values: MonthSeries) -> PnLNode:
            return self._node(line, values, sign=Sign.MINUS, parent=AccountLine.INCOME_TAXES)

        return root, [
            child(AccountLine.CSLL_CONSIDERED, csll_considered),
            child(AccountLine.CSLL_POSTED, csll_posted),
            child(AccountLine.CSLL_PROVISION, csll_provision),
            child(AccountLine.IRPJ_CONSIDERED, irpj_considered),
            child(AccountLine.IRPJ_POSTED, irpj_posted),
            child(AccountLine.IRPJ_PROVISION, irpj_provision),
        ]


async def build_year_tree(year: int, builder: Optional[PnLBuilder] = None) -> List[PnLNode]:
    """Primary entry point: ordered statement rows for a year."""
    return await (builder or PnLBuilder()).build(year)
