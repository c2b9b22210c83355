"""
Expense Ledger Retrieval Tools

Deterministic queries over the relational ledger (MySQL): payable
titles grouped into expense groups, income-tax postings, and financial
revenue posted to current accounts.

The engine is created lazily on first use and shared for the process
lifetime; connections are pooled and pre-pinged.
"""
import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine, URL, make_url

from config.settings import LedgerConfig, get_config
from pnl_matrix.core.error_taxonomy import BadRequestError, ConfigurationError, DataRetrievalError
from pnl_matrix.core.financial_semantics import (
    DETAIL_ROW_LIMIT,
    FINANCIAL_REVENUE_EXCLUDED_CODES,
    FINANCIAL_REVENUE_PARENT_CODES,
    group_description,
)
from pnl_matrix.core.observability import SpanKind, get_tracer
from pnl_matrix.core.records import (
    ExpenseDetail,
    FinancialRevenueDetail,
    FinancialRevenueRow,
    LedgerRow,
)
from pnl_matrix.core.reporting_calendar import is_month_key, to_month_key
from pnl_matrix.tools.calculator import coerce_amount

logger = logging.getLogger(__name__)

# Two-level expense group ("2.07 + Operacionais") joined from the category tree
_EXPENSE_BASE = """
SELECT
    CONCAT(SUBSTRING_INDEX(cp.codigo_categoria, '.', 2), ' + ', mc.descricao) AS expense_group,
    cat.descricao AS category,
    SUM(cp.valor_documento) AS amount,
    DATE_FORMAT(STR_TO_DATE(cp.data_entrada, '%Y-%m-%d'), '%Y-%m') AS period
FROM omie_contas_pagar_api cp
LEFT JOIN omie_categorias_api cat
       ON cp.codigo_categoria = cat.codigo AND cp.nome_projeto = cat.nome_projeto
LEFT JOIN (
    SELECT DISTINCT nome_projeto, codigo, descricao
    FROM omie_categorias_api
    WHERE conta_despesa = 'S'
      AND LOCATE('.', codigo) = 2
      AND LENGTH(codigo) = 4
) mc ON SUBSTRING_INDEX(cp.codigo_categoria, '.', 2) = mc.codigo AND cp.nome_projeto = mc.nome_projeto
WHERE YEAR(STR_TO_DATE(cp.data_entrada, '%Y-%m-%d')) = :year
  AND cp.status_titulo != 'CANCELADO'
"""

EXPENSES_SQL = _EXPENSE_BASE + """
  AND NOT (mc.descricao = 'Operacionais' AND cat.descricao = 'Devolução')
GROUP BY period, expense_group, category
"""

TAX_EXPENSES_SQL = _EXPENSE_BASE + """
  AND (cat.descricao LIKE 'IRPJ%' OR cat.descricao LIKE 'CSLL%')
GROUP BY period, expense_group, category
"""

EXPENSE_DETAIL_SQL = f"""
SELECT
    DATE_FORMAT(STR_TO_DATE(cp.data_entrada, '%Y-%m-%d'), '%Y-%m-%d') AS entry_date,
    cl.nome_fantasia AS supplier,
    cp.valor_documento AS amount,
    cp.status_titulo AS status,
    cp2.observacao AS note
FROM omie_contas_pagar_api cp
LEFT JOIN omie_consulta_contas_pagar_api cp2 ON cp2.codigo_lancamento_omie = cp.codigo_lancamento_omie
LEFT JOIN omie_clientes_api cl ON cp.codigo_cliente_fornecedor = cl.codigo_cliente_omie
LEFT JOIN omie_categorias_api cat
       ON cp.codigo_categoria = cat.codigo AND cp.nome_projeto = cat.nome_projeto
WHERE DATE_FORMAT(STR_TO_DATE(cp.data_entrada, '%Y-%m-%d'), '%Y-%m') = :ym
  AND CONCAT(SUBSTRING_INDEX(cp.codigo_categoria, '.', 2), ' + ', :group_description) = :expense_group
  AND cat.descricao = :category
  AND cp.status_titulo != 'CANCELADO'
ORDER BY cp.valor_documento DESC
LIMIT {DETAIL_ROW_LIMIT}
"""

_POSTING_DATE = "STR_TO_DATE(JSON_UNQUOTE(JSON_EXTRACT(l.cabecalho, '$.dDtLanc')), '%d/%m/%Y')"
_POSTING_VALUE = "CAST(JSON_UNQUOTE(JSON_EXTRACT(l.cabecalho, '$.nValorLanc')) AS DECIMAL(15,2))"
_POSTING_JOINS = """
FROM omie_contas_correntes_lancamentos_api l
JOIN omie_categorias_api cat
     ON JSON_UNQUOTE(JSON_EXTRACT(l.detalhes, '$.cCodCateg')) = cat.codigo
    AND l.nome_projeto = cat.nome_projeto
JOIN omie_categorias_api cat2
     ON cat.categoria_superior = cat2.codigo
    AND l.nome_projeto = cat2.nome_projeto
"""


def _sql_list(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


FINANCIAL_REVENUE_SQL = f"""
SELECT
    cat.categoria_superior AS parent_code,
    cat2.descricao AS parent_label,
    cat.codigo AS category_code,
    cat.descricao AS category_label,
    DATE_FORMAT({_POSTING_DATE}, '%Y-%m') AS period,
    SUM({_POSTING_VALUE}) AS amount
{_POSTING_JOINS}
WHERE cat.categoria_superior IN ({_sql_list(FINANCIAL_REVENUE_PARENT_CODES)})
  AND cat.codigo NOT IN ({_sql_list(FINANCIAL_REVENUE_EXCLUDED_CODES)})
  AND YEAR({_POSTING_DATE}) = :year
GROUP BY parent_code, parent_label, category_code, category_label, period
ORDER BY period, parent_code, category_code
"""

FINANCIAL_REVENUE_DETAIL_SQL = f"""
SELECT
    l.dev_id AS entry_id,
    JSON_UNQUOTE(JSON_EXTRACT(l.cabecalho, '$.dDtLanc')) AS posted_on,
    {_POSTING_VALUE} AS amount,
    JSON_UNQUOTE(JSON_EXTRACT(l.detalhes, '$.cObs')) AS note
{_POSTING_JOINS}
WHERE cat2.descricao = :parent_label
  AND cat.descricao = :category_label
  AND DATE_FORMAT({_POSTING_DATE}, '%Y-%m') = :ym
ORDER BY amount DESC
LIMIT {DETAIL_ROW_LIMIT}
"""


# Module-level engine, one pool per process
_engine: Optional[Engine] = None


def _engine_url(config: LedgerConfig):
    if config.url:
        return make_url(config.url)
    return URL.create(
        "mysql+pymysql",
        username=config.user or None,
        password=config.password or None,
        host=config.host,
        port=config.port,
        database=config.database,
    )


def get_engine(config: Optional[LedgerConfig] = None) -> Engine:
    """
    Get the shared engine, creating it on first use.

    Raises:
        ConfigurationError: If no ledger connection is configured.
    """
    global _engine
    if _engine is None:
        config = config or get_config().ledger
        if not config.is_configured:
            raise ConfigurationError("Missing ledger connection: set MYSQL_URL or MYSQL_HOST/MYSQL_DATABASE")
        _engine = create_engine(
            _engine_url(config),
            pool_pre_ping=True,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_recycle=config.pool_recycle,
        )
        logger.info(
            f"Ledger engine initialized (pool_size={config.pool_size}, "
            f"max_overflow={config.max_overflow})"
        )
    return _engine


def reset_engine():
    """Dispose the shared engine (for testing and shutdown)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


class LedgerClient:
    """
    Relational ledger client.

    Every public method is synchronous and returns typed rows; async
    callers run them in a worker thread.
    """

    def __init__(self, engine: Optional[Engine] = None, config: Optional[LedgerConfig] = None):
        self._engine = engine
        self.config = config

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine(self.config)
        return self._engine

    def _run(self, name: str, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Execute a parameterized statement and return plain dict rows."""
        start = time.monotonic()
        with get_tracer().start_span(name, SpanKind.DATA_RETRIEVAL, {"store": "ledger"}) as span:
            try:
                with self.engine.connect() as conn:
                    rows = [dict(r._mapping) for r in conn.execute(text(sql), params)]
            except sa_exc.SQLAlchemyError as e:
                logger.error(f"Ledger query {name} failed: {e}")
                timeout = "timed out" in str(e).lower() or "timeout" in str(e).lower()
                raise DataRetrievalError(f"Ledger query {name} failed: {e}",
                                         source="ledger", timeout=timeout) from e
            if span:
                span.attributes["row_count"] = len(rows)

        logger.debug(f"Ledger query {name} returned {len(rows)} rows in {(time.monotonic() - start) * 1000:.0f}ms")
        return rows

    # ==================== AGGREGATES ====================

    def fetch_expenses(self, year: int) -> List[LedgerRow]:
        """Payables per (group, category, month), cancelled titles and misfiled returns excluded."""
        return [self._ledger_row(r) for r in self._run("fetch_expenses", EXPENSES_SQL, {"year": int(year)})]

    def fetch_tax_expenses(self, year: int) -> List[LedgerRow]:
        """CSLL and IRPJ postings per (group, category, month)."""
        rows = self._run("fetch_tax_expenses", TAX_EXPENSES_SQL, {"year": int(year)})
        return [self._ledger_row(r) for r in rows]

    def fetch_financial_revenue(self, year: int) -> List[FinancialRevenueRow]:
        """Financial revenue per (parent category, category, month)."""
        rows = self._run("fetch_financial_revenue", FINANCIAL_REVENUE_SQL, {"year": int(year)})
        return [
            FinancialRevenueRow(
                period=to_month_key(r.get("period")),
                parent_code=r.get("parent_code") or "",
                parent_label=r.get("parent_label") or "",
                category_code=r.get("category_code") or "",
                category_label=r.get("category_label") or "",
                amount=coerce_amount(r.get("amount")),
            )
            for r in rows
        ]

    # ==================== DETAILS ====================

    def fetch_expense_details(self, ym: str, group: str, category: str) -> List[ExpenseDetail]:
        """Payable titles behind one (group, category, month) cell, largest first."""
        if not is_month_key(ym):
            raise BadRequestError(f"invalid month key: {ym!r}", context={"ym": ym})
        params = {
            "ym": ym,
            "group_description": group_description(group),
            "expense_group": group,
            "category": category,
        }
        return [
            ExpenseDetail(
                entry_date=str(r.get("entry_date") or ""),
                supplier=r.get("supplier") or "",
                amount=coerce_amount(r.get("amount")),
                status=r.get("status") or "",
                note=r.get("note") or "",
            )
            for r in self._run("fetch_expense_details", EXPENSE_DETAIL_SQL, params)
        ]

    def fetch_financial_revenue_details(self, ym: str, parent_label: str,
                                        category_label: str) -> List[FinancialRevenueDetail]:
        """Current-account postings behind one financial revenue cell."""
        if not is_month_key(ym):
            raise BadRequestError(f"invalid month key: {ym!r}", context={"ym": ym})
        params = {"ym": ym, "parent_label": parent_label, "category_label": category_label}
        return [
            FinancialRevenueDetail(
                entry_id=str(r.get("entry_id") or ""),
                posted_on=r.get("posted_on") or "",
                amount=coerce_amount(r.get("amount")),
                note=r.get("note") or "",
            )
            for r in self._run("fetch_financial_revenue_details", FINANCIAL_REVENUE_DETAIL_SQL, params)
        ]

    @staticmethod
    def _ledger_row(row: Dict[str, Any]) -> LedgerRow:
        return LedgerRow(
            period=to_month_key(row.get("period")),
            group=row.get("expense_group") or "",
            category=row.get("category") or "",
            amount=coerce_amount(row.get("amount")),
        )


# Global client instance
_ledger_client: Optional[LedgerClient] = None


def get_ledger_client() -> LedgerClient:
    """Get the process-wide ledger client."""
    global _ledger_client
    if _ledger_client is None:
        _ledger_client = LedgerClient()
    return _ledger_client


def reset_ledger_client():
    """Reset the global client (for testing)."""
    global _ledger_client
    _ledger_client = None
