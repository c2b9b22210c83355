"""
Invoice Warehouse Retrieval Tools

Deterministic aggregate and detail queries over the invoice line-item
table in BigQuery.

This module handles:
1. Lazy client construction from the warehouse configuration
2. SQL composition from the scenario filters and selectors in financial_semantics
3. Parameterized execution (years and months are never interpolated)
4. Row typing and numeric coercion
"""
import logging
import time
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import bigquery

from config.settings import WarehouseConfig, get_config
from pnl_matrix.core.error_taxonomy import (
    BadRequestError,
    ConfigurationError,
    DataRetrievalError,
    UnsupportedCombinationError,
)
from pnl_matrix.core.financial_semantics import (
    AccountKind,
    BREAKDOWN_ROW_LIMIT,
    BreakdownDimension,
    DETAIL_ROW_LIMIT,
    INTEREST_SELECTOR,
    QUANTITY_SELECTOR,
    REVENUE_KINDS,
    COGS_KINDS,
    REVENUE_TAX_EXPRESSIONS,
    REVENUE_TAX_SOURCE_COLUMNS,
    SALE_FILTER,
    SCENARIOS,
    ST_TAX_EXPRESSIONS,
    ST_TAX_SOURCE_COLUMNS,
    TAX_COLUMNS,
    TaxScenario,
    VOLUME_KINDS,
)
from pnl_matrix.core.observability import SpanKind, get_tracer
from pnl_matrix.core.records import AggregateRow, ItemDetail, TaxRow
from pnl_matrix.core.reporting_calendar import to_month_key, is_month_key
from pnl_matrix.tools.calculator import coerce_amount

logger = logging.getLogger(__name__)

PERIOD_EXPR = "FORMAT_DATE('%Y-%m', DATE(data_emissao))"
YEAR_CONDITION = "EXTRACT(YEAR FROM DATE(data_emissao)) = @year"
MONTH_CONDITION = f"{PERIOD_EXPR} = @ym"
UNIT_EXPR = "CASE WHEN parsed_type_unit IN ('CAIXA','CX') THEN 'CX' ELSE parsed_type_unit END"

BREAKDOWN_LABELS: Dict[BreakdownDimension, str] = {
    BreakdownDimension.FAMILY: "descricao_familia",
    BreakdownDimension.PRODUCT: "parsed_x_prod_value",
    BreakdownDimension.VOLUME_FAMILY: f"FORMAT('%s (%s)', descricao_familia, {UNIT_EXPR})",
    BreakdownDimension.VOLUME_PRODUCT: f"FORMAT('%s (%s)', parsed_x_prod_value, {UNIT_EXPR})",
}


class WarehouseClient:
    """
    BigQuery client for the invoice line-item table.

    Every public method is synchronous and returns typed rows; async
    callers run them in a worker thread.
    """

    def __init__(self, config: Optional[WarehouseConfig] = None,
                 client: Optional[bigquery.Client] = None):
        self.config = config or get_config().warehouse
        self._client = client

    @property
    def client(self) -> bigquery.Client:
        """Get or create the BigQuery client."""
        if self._client is None:
            kwargs: Dict[str, Any] = {}
            if self.config.project_id:
                kwargs["project"] = self.config.project_id
            if self.config.location:
                kwargs["location"] = self.config.location
            if self.config.keyfile:
                self._client = bigquery.Client.from_service_account_json(self.config.keyfile, **kwargs)
            else:
                self._client = bigquery.Client(**kwargs)
            logger.info(f"BigQuery client initialized for project {self._client.project}")
        return self._client

    @property
    def table(self) -> str:
        try:
            return self.config.qualified_table
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    # ==================== EXECUTION ====================

    def _run(self, name: str, sql: str, params: List[bigquery.ScalarQueryParameter]) -> List[Dict[str, Any]]:
        """Execute a parameterized query and return plain dict rows."""
        job_config = bigquery.QueryJobConfig(query_parameters=params)
        start = time.monotonic()

        with get_tracer().start_span(name, SpanKind.DATA_RETRIEVAL, {"store": "warehouse"}) as span:
            try:
                rows = [dict(row.items()) for row in self.client.query(sql, job_config=job_config).result()]
            except google_exceptions.GoogleAPIError as e:
                logger.error(f"Warehouse query {name} failed: {e}")
                timeout = isinstance(e, (google_exceptions.DeadlineExceeded, google_exceptions.GatewayTimeout))
                raise DataRetrievalError(f"Warehouse query {name} failed: {e}",
                                         source="warehouse", timeout=timeout) from e
            if span:
                span.attributes["row_count"] = len(rows)

        logger.debug(f"Warehouse query {name} returned {len(rows)} rows in {(time.monotonic() - start) * 1000:.0f}ms")
        return rows

    @staticmethod
    def _year_param(year: int) -> bigquery.ScalarQueryParameter:
        return bigquery.ScalarQueryParameter("year", "INT64", int(year))

    @staticmethod
    def _month_param(ym: str) -> bigquery.ScalarQueryParameter:
        if not is_month_key(ym):
            raise BadRequestError(f"invalid month key: {ym!r}", context={"ym": ym})
        return bigquery.ScalarQueryParameter("ym", "STRING", ym)

    # ==================== SQL COMPOSITION ====================

    def _kind_union_sql(self, kinds) -> str:
        """Monthly sums for several kinds in one scan, one branch per kind."""
        branches = [
            f"SELECT {PERIOD_EXPR} AS period, '{kind.value}' AS kind, {SCENARIOS[kind].selector_sql} AS amount\n"
            f"    FROM {self.table}\n"
            f"    WHERE {SCENARIOS[kind].filter_sql} AND {YEAR_CONDITION}"
            for kind in kinds
        ]
        union = "\n    UNION ALL\n    ".join(branches)
        return (
            f"WITH base AS (\n    {union}\n)\n"
            "SELECT period, kind, SUM(amount) AS amount\n"
            "FROM base\n"
            "GROUP BY period, kind\n"
            "ORDER BY period"
        )

    def _tax_union_sql(self, source_columns, expressions) -> str:
        """Three-branch scenario union, return branch negated, unnested per tax."""
        branches = []
        for scenario in TaxScenario:
            sign = "-" if scenario.sign_multiplier < 0 else ""
            columns = ",\n      ".join(
                f"{sign}SAFE_CAST({column} AS FLOAT64) AS {alias}" for alias, column in source_columns
            )
            branches.append(
                f"SELECT {PERIOD_EXPR} AS period, '{scenario.value}' AS scenario,\n      {columns}\n"
                f"    FROM {self.table}\n"
                f"    WHERE {scenario.filter_sql} AND {YEAR_CONDITION}"
            )
        union = "\n    UNION ALL\n    ".join(branches)
        structs = ",\n    ".join(
            f"STRUCT('{tax_name}' AS tax_name, {expression} AS tax_val)"
            for tax_name, expression in expressions
        )
        return (
            f"WITH union_all AS (\n    {union}\n)\n"
            "SELECT period, tax_name, scenario, SUM(COALESCE(tax_val, 0)) AS amount\n"
            f"FROM union_all,\n  UNNEST([\n    {structs}\n  ])\n"
            "GROUP BY period, tax_name, scenario\n"
            "ORDER BY period"
        )

    # ==================== TOP-LEVEL AGGREGATES ====================

    def fetch_revenue_lines(self, year: int) -> List[AggregateRow]:
        """Gross revenue, returns and discount per month, tagged by kind."""
        rows = self._run("fetch_revenue_lines", self._kind_union_sql(REVENUE_KINDS), [self._year_param(year)])
        return [self._kind_row(r) for r in rows]

    def fetch_cogs_lines(self, year: int) -> List[AggregateRow]:
        """The four cost-of-goods variants per month, tagged by kind."""
        rows = self._run("fetch_cogs_lines", self._kind_union_sql(COGS_KINDS), [self._year_param(year)])
        return [self._kind_row(r) for r in rows]

    def fetch_revenue_taxes(self, year: int) -> List[TaxRow]:
        """PIS/Cofins/ISS/IR/FCP/ICMS/IPI per month and scenario."""
        sql = self._tax_union_sql(REVENUE_TAX_SOURCE_COLUMNS, REVENUE_TAX_EXPRESSIONS)
        return [self._tax_row(r) for r in self._run("fetch_revenue_taxes", sql, [self._year_param(year)])]

    def fetch_st_taxes(self, year: int) -> List[TaxRow]:
        """ICMS_ST/FCP_ST per month and scenario."""
        sql = self._tax_union_sql(ST_TAX_SOURCE_COLUMNS, ST_TAX_EXPRESSIONS)
        return [self._tax_row(r) for r in self._run("fetch_st_taxes", sql, [self._year_param(year)])]

    def fetch_interest_income(self, year: int) -> List[AggregateRow]:
        """Penalty and interest charged on normal sales, per month."""
        sql = (
            f"SELECT {PERIOD_EXPR} AS period, SUM({INTEREST_SELECTOR}) AS amount\n"
            f"FROM {self.table}\n"
            f"WHERE {SALE_FILTER} AND {YEAR_CONDITION}\n"
            "GROUP BY period"
        )
        rows = self._run("fetch_interest_income", sql, [self._year_param(year)])
        return [AggregateRow(period=to_month_key(r.get("period")), amount=coerce_amount(r.get("amount")))
                for r in rows]

    # ==================== BREAKDOWNS ====================

    def fetch_breakdown(self, year: int, kind: AccountKind,
                        dimension: BreakdownDimension) -> List[AggregateRow]:
        """
        Monthly sums of one kind re-aggregated by family or product.

        Quantity dimensions are only defined for sales and returns.
        """
        if dimension.is_volume and kind not in VOLUME_KINDS:
            raise UnsupportedCombinationError(
                f"{dimension.value} breakdown not supported for kind {kind.value}",
                context={"kind": kind.value, "dimension": dimension.value},
            )

        scenario = SCENARIOS[kind]
        selector = QUANTITY_SELECTOR if dimension.is_volume else scenario.selector_sql
        sql = (
            f"SELECT {BREAKDOWN_LABELS[dimension]} AS label, {PERIOD_EXPR} AS period, SUM({selector}) AS amount\n"
            f"FROM {self.table}\n"
            f"WHERE {scenario.filter_sql} AND {YEAR_CONDITION}\n"
            "GROUP BY label, period\n"
            "ORDER BY period, amount DESC\n"
            f"LIMIT {BREAKDOWN_ROW_LIMIT}"
        )
        rows = self._run(f"fetch_{dimension.value}_breakdown", sql, [self._year_param(year)])
        return [
            AggregateRow(
                period=to_month_key(r.get("period")),
                amount=coerce_amount(r.get("amount")),
                label=r.get("label"),
                kind=kind,
            )
            for r in rows
            if r.get("label") is not None
        ]

    # ==================== DETAILS ====================

    def fetch_item_details(self, ym: str, kind: AccountKind) -> List[ItemDetail]:
        """Per-product totals behind one revenue or COGS cell."""
        month = self._month_param(ym)
        scenario = SCENARIOS[kind]
        sql = (
            "SELECT parsed_x_prod_value AS product, COUNT(*) AS invoice_count,\n"
            f"  SUM({scenario.selector_sql}) AS total\n"
            f"FROM {self.table}\n"
            f"WHERE {scenario.filter_sql} AND {MONTH_CONDITION}\n"
            "GROUP BY product\n"
            "ORDER BY total DESC\n"
            f"LIMIT {DETAIL_ROW_LIMIT}"
        )
        return [self._item_row(r) for r in self._run("fetch_item_details", sql, [month])]

    def fetch_tax_details(self, ym: str, tax_name: str, scenario: TaxScenario) -> List[ItemDetail]:
        """Per-product totals of one tax column for one scenario and month; non-zero only."""
        column = TAX_COLUMNS.get(tax_name)
        if column is None:
            raise BadRequestError(f"unknown tax name: {tax_name!r}", context={"tax_name": tax_name})
        month = self._month_param(ym)
        value = f"SAFE_CAST({column} AS FLOAT64)"
        sql = (
            "SELECT COALESCE(produto_norm, parsed_x_prod_value) AS product, COUNT(*) AS invoice_count,\n"
            f"  SUM({value} * {scenario.sign_multiplier}) AS total\n"
            f"FROM {self.table}\n"
            f"WHERE {scenario.filter_sql} AND {MONTH_CONDITION}\n"
            f"  AND {value} IS NOT NULL AND {value} != 0\n"
            "GROUP BY product\n"
            "ORDER BY total DESC\n"
            f"LIMIT {DETAIL_ROW_LIMIT}"
        )
        return [self._item_row(r) for r in self._run("fetch_tax_details", sql, [month])]

    # ==================== ROW TYPING ====================

    @staticmethod
    def _kind_row(row: Dict[str, Any]) -> AggregateRow:
        return AggregateRow(
            period=to_month_key(row.get("period")),
            amount=coerce_amount(row.get("amount")),
            kind=AccountKind(row.get("kind")),
        )

    @staticmethod
    def _tax_row(row: Dict[str, Any]) -> TaxRow:
        return TaxRow(
            period=to_month_key(row.get("period")),
            tax_name=row.get("tax_name"),
            scenario=row.get("scenario"),
            amount=coerce_amount(row.get("amount")),
        )

    @staticmethod
    def _item_row(row: Dict[str, Any]) -> ItemDetail:
        return ItemDetail(
            product=row.get("product") or "",
            invoice_count=int(row.get("invoice_count") or 0),
            total=coerce_amount(row.get("total")),
        )


# Global client instance
_warehouse_client: Optional[WarehouseClient] = None


def get_warehouse_client() -> WarehouseClient:
    """Get the process-wide warehouse client (BigQuery client created on first query)."""
    global _warehouse_client
    if _warehouse_client is None:
        _warehouse_client = WarehouseClient()
    return _warehouse_client


def reset_warehouse_client():
    """Reset the global client (for testing)."""
    global _warehouse_client
    _warehouse_client = None
