"""
Financial Semantics Module

Single source of truth for the statement's vocabulary: the fixed account
lines of the P&L, the source kinds that feed them, and the technical
filters that select each kind's invoice lines in the warehouse.

Key Concepts:
- Account line: a fixed node id of the statement ("1" gross revenue, "7" COGS...)
- Account kind: a source scenario queried in the warehouse ("ReceitaBruta", "CPV"...)
- Concept: one fetcher's output, also the key of the correction overlay
- Scenario filter: boolean predicate over invoice attributes
- Selector: arithmetic expression producing the amount of one invoice line

IMPORTANT: consumers never compare node ids against string literals.
Every id, kind and expense group used by formulas or drill-downs is
declared here once.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from enum import Enum

logger = logging.getLogger(__name__)


class AccountLine(str, Enum):
    """Stable node ids of the statement, referenced by formulas and consumers."""
    GROSS_REVENUE = "1"
    GROSS_REVENUE_VOLUME = "1_volumes"
    RETURNS = "2"
    RETURNS_VOLUME = "2_volumes"
    REVENUE_TAXES = "tax3"
    ST_TAXES = "tax4"
    IPI = "taxIPI"
    DISCOUNT = "5"
    NET_REVENUE = "6"
    NET_REVENUE_MARGIN = "margem"
    COGS = "7"
    COGS_BONUS = "8"
    COGS_LOSS = "9"
    COGS_RETURN = "10"
    OPERATING_INCOME = "op"
    OPERATING_MARGIN = "margemOpIncome"
    GROSS_PROFIT = "lucroBruto"
    GROSS_PROFIT_MARGIN = "margemLucroBruto"
    EBITDA = "ebitda"
    EBITDA_MARGIN = "margemEbitda"
    FINANCIAL_REVENUE = "financial_revenue"
    INCOME_TAXES = "taxes"
    CSLL_CONSIDERED = "csll_cons"
    CSLL_POSTED = "csll_lanc"
    CSLL_PROVISION = "csll_prov"
    IRPJ_CONSIDERED = "irpj_cons"
    IRPJ_POSTED = "irpj_lanc"
    IRPJ_PROVISION = "irpj_prov"
    NET_PROFIT = "netprofit"
    NET_PROFIT_MARGIN = "margemNetProfit"


LINE_LABELS: Dict[AccountLine, str] = {
    AccountLine.GROSS_REVENUE: "Receita Bruta",
    AccountLine.GROSS_REVENUE_VOLUME: "Volumes (Receita)",
    AccountLine.RETURNS: "Devoluções",
    AccountLine.RETURNS_VOLUME: "Volumes (Devolucoes)",
    AccountLine.REVENUE_TAXES: "Impostos sobre receita",
    AccountLine.ST_TAXES: "Impostos ST",
    AccountLine.IPI: "IPI",
    AccountLine.DISCOUNT: "Descontos Financeiros",
    AccountLine.NET_REVENUE: "Receita Líquida",
    AccountLine.NET_REVENUE_MARGIN: "Margem % Receita Líquida",
    AccountLine.COGS: "CPV",
    AccountLine.COGS_BONUS: "CPV Bonificações e Amostras",
    AccountLine.COGS_LOSS: "Perdas e Descartes",
    AccountLine.COGS_RETURN: "CPV Devoluções",
    AccountLine.OPERATING_INCOME: "Receita Operacional",
    AccountLine.OPERATING_MARGIN: "Margem % Receita Operacional",
    AccountLine.GROSS_PROFIT: "Lucro Bruto",
    AccountLine.GROSS_PROFIT_MARGIN: "Margem % Lucro Bruto",
    AccountLine.EBITDA: "EBITDA",
    AccountLine.EBITDA_MARGIN: "Margem % EBITDA",
    AccountLine.FINANCIAL_REVENUE: "Receitas Financeiras",
    AccountLine.INCOME_TAXES: "Impostos",
    AccountLine.CSLL_CONSIDERED: "CSLL – Considerar",
    AccountLine.CSLL_POSTED: "CSLL – Lançamento",
    AccountLine.CSLL_PROVISION: "CSLL – Provisão",
    AccountLine.IRPJ_CONSIDERED: "IRPJ – Considerar",
    AccountLine.IRPJ_POSTED: "IRPJ – Lançamento",
    AccountLine.IRPJ_PROVISION: "IRPJ – Provisão",
    AccountLine.NET_PROFIT: "Lucro Líquido",
    AccountLine.NET_PROFIT_MARGIN: "Margem % Lucro Liquido",
}


class Concept(str, Enum):
    """One aggregate fetcher's output. Also the top-level key of the correction file."""
    GROSS_REVENUE = "gross_revenue"
    RETURNS = "returns"
    DISCOUNT = "discount"
    COGS = "cogs"
    COGS_BONUS = "cogs_bonus"
    COGS_LOSS = "cogs_loss"
    COGS_RETURN = "cogs_return"
    REVENUE_TAXES = "revenue_taxes"
    ST_TAXES = "st_taxes"
    EXPENSES = "expenses"
    TAX_EXPENSES = "tax_expenses"
    FINANCIAL_REVENUE = "financial_revenue"
    INTEREST_INCOME = "interest_income"


class BreakdownDimension(str, Enum):
    """Auxiliary dimensions a line can be re-aggregated by."""
    FAMILY = "family"
    PRODUCT = "product"
    VOLUME_FAMILY = "volume_family"
    VOLUME_PRODUCT = "volume_product"

    @property
    def is_product(self) -> bool:
        return self in (BreakdownDimension.PRODUCT, BreakdownDimension.VOLUME_PRODUCT)

    @property
    def is_volume(self) -> bool:
        return self in (BreakdownDimension.VOLUME_FAMILY, BreakdownDimension.VOLUME_PRODUCT)


class AccountKind(str, Enum):
    """Source scenarios queried in the invoice warehouse."""
    GROSS_REVENUE = "ReceitaBruta"
    RETURNS = "Devolucao"
    DISCOUNT = "Desconto"
    COGS = "CPV"
    COGS_BONUS = "CPV_Boni"
    COGS_LOSS = "Perdas"
    COGS_RETURN = "CPV_Devol"

    @property
    def concept(self) -> Concept:
        return KIND_CONCEPTS[self]

    @property
    def line(self) -> AccountLine:
        return KIND_LINES[self]

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["AccountKind"]:
        """Kind for a raw parameter value, or None when it names no kind."""
        for kind in cls:
            if kind.value == raw:
                return kind
        return None


REVENUE_KINDS: Tuple[AccountKind, ...] = (
    AccountKind.GROSS_REVENUE,
    AccountKind.RETURNS,
    AccountKind.DISCOUNT,
)
COGS_KINDS: Tuple[AccountKind, ...] = (
    AccountKind.COGS,
    AccountKind.COGS_BONUS,
    AccountKind.COGS_LOSS,
    AccountKind.COGS_RETURN,
)
# Quantities only make sense for outbound sales and their returns
VOLUME_KINDS: Tuple[AccountKind, ...] = (
    AccountKind.GROSS_REVENUE,
    AccountKind.RETURNS,
)

KIND_CONCEPTS: Dict[AccountKind, Concept] = {
    AccountKind.GROSS_REVENUE: Concept.GROSS_REVENUE,
    AccountKind.RETURNS: Concept.RETURNS,
    AccountKind.DISCOUNT: Concept.DISCOUNT,
    AccountKind.COGS: Concept.COGS,
    AccountKind.COGS_BONUS: Concept.COGS_BONUS,
    AccountKind.COGS_LOSS: Concept.COGS_LOSS,
    AccountKind.COGS_RETURN: Concept.COGS_RETURN,
}

KIND_LINES: Dict[AccountKind, AccountLine] = {
    AccountKind.GROSS_REVENUE: AccountLine.GROSS_REVENUE,
    AccountKind.RETURNS: AccountLine.RETURNS,
    AccountKind.DISCOUNT: AccountLine.DISCOUNT,
    AccountKind.COGS: AccountLine.COGS,
    AccountKind.COGS_BONUS: AccountLine.COGS_BONUS,
    AccountKind.COGS_LOSS: AccountLine.COGS_LOSS,
    AccountKind.COGS_RETURN: AccountLine.COGS_RETURN,
}

# Lines that expose family/product breakdowns, and the kind each one queries
LINE_KINDS: Dict[AccountLine, AccountKind] = {
    **{line: kind for kind, line in KIND_LINES.items()},
    AccountLine.GROSS_REVENUE_VOLUME: AccountKind.GROSS_REVENUE,
    AccountLine.RETURNS_VOLUME: AccountKind.RETURNS,
}

VOLUME_LINES = (AccountLine.GROSS_REVENUE_VOLUME, AccountLine.RETURNS_VOLUME)


# =============================================================================
# SCENARIO FILTERS AND SELECTORS
# =============================================================================

SALE_FILTER = (
    "tipo_operacao = 'Saída' AND finalidade = 'Normal/Venda' AND cancelada = 'Não' "
    "AND (nome_cenario = 'Venda' OR nome_cenario = 'Inativo')"
)
BONUS_FILTER = (
    "tipo_operacao = 'Saída' AND finalidade = 'Normal/Venda' AND cancelada = 'Não' "
    "AND nome_cenario = 'Bonificação'"
)
LOSS_FILTER = (
    "tipo_operacao = 'Saída' AND finalidade = 'Normal/Venda' AND cancelada = 'Não' "
    "AND nome_cenario = 'Baixa de estoque - Perda'"
)
RETURN_FILTER = "finalidade = 'Devolução' AND cancelada = 'Não'"
DISCOUNT_FILTER = (
    f"{SALE_FILTER} AND SAFE_CAST(parsed_desconto_proportional_value AS FLOAT64) > 0"
)


def _num(column: str) -> str:
    """Tolerant numeric read of a warehouse column: malformed or null becomes 0."""
    return f"COALESCE(SAFE_CAST({column} AS FLOAT64), 0)"


REVENUE_SELECTOR = f"{_num('parsed_total_product_value')} + {_num('parsed_frete_value')}"
DISCOUNT_SELECTOR = _num("parsed_desconto_proportional_value")
COST_SELECTOR = f"{_num('parsed_unit_cost')} * {_num('parsed_quantity_units')}"
QUANTITY_SELECTOR = _num("parsed_quantity_units")
INTEREST_SELECTOR = _num("parsed_multa_juros_proportional_value")


@dataclass(frozen=True)
class ScenarioDefinition:
    """How one account kind is selected and valued in the warehouse."""
    kind: AccountKind
    filter_sql: str
    selector_sql: str
    description: str = ""


SCENARIOS: Dict[AccountKind, ScenarioDefinition] = {
    AccountKind.GROSS_REVENUE: ScenarioDefinition(
        kind=AccountKind.GROSS_REVENUE,
        filter_sql=SALE_FILTER,
        selector_sql=REVENUE_SELECTOR,
        description="Outbound normal sales, product value plus freight",
    ),
    AccountKind.RETURNS: ScenarioDefinition(
        kind=AccountKind.RETURNS,
        filter_sql=RETURN_FILTER,
        selector_sql=REVENUE_SELECTOR,
        description="Returned goods, product value plus freight",
    ),
    AccountKind.DISCOUNT: ScenarioDefinition(
        kind=AccountKind.DISCOUNT,
        filter_sql=DISCOUNT_FILTER,
        selector_sql=DISCOUNT_SELECTOR,
        description="Proportional discount on discounted normal sales",
    ),
    AccountKind.COGS: ScenarioDefinition(
        kind=AccountKind.COGS,
        filter_sql=SALE_FILTER,
        selector_sql=COST_SELECTOR,
        description="Cost of normal sales",
    ),
    AccountKind.COGS_BONUS: ScenarioDefinition(
        kind=AccountKind.COGS_BONUS,
        filter_sql=BONUS_FILTER,
        selector_sql=COST_SELECTOR,
        description="Cost of bonus shipments and samples",
    ),
    AccountKind.COGS_LOSS: ScenarioDefinition(
        kind=AccountKind.COGS_LOSS,
        filter_sql=LOSS_FILTER,
        selector_sql=COST_SELECTOR,
        description="Cost of inventory write-offs",
    ),
    AccountKind.COGS_RETURN: ScenarioDefinition(
        kind=AccountKind.COGS_RETURN,
        filter_sql=RETURN_FILTER,
        selector_sql=COST_SELECTOR,
        description="Cost of returned goods",
    ),
}


# =============================================================================
# TAXES
# =============================================================================

class TaxScenario(str, Enum):
    """Scenario branches of the tax union. Returns are sign-flipped."""
    SALE = "Venda"
    BONUS = "Bonificacao"
    RETURN = "Devolucao"

    @property
    def filter_sql(self) -> str:
        return {
            TaxScenario.SALE: SALE_FILTER,
            TaxScenario.BONUS: BONUS_FILTER,
            TaxScenario.RETURN: RETURN_FILTER,
        }[self]

    @property
    def sign_multiplier(self) -> int:
        return -1 if self is TaxScenario.RETURN else 1

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["TaxScenario"]:
        for scenario in cls:
            if scenario.value == raw:
                return scenario
        return None


TAX_COLUMNS: Dict[str, str] = {
    "PIS": "parsed_pis_value",
    "Cofins": "parsed_cofins_value",
    "ISS": "parsed_iss_value",
    "IR": "parsed_ir_value",
    "FCP": "parsed_fcp_value",
    "ICMS": "parsed_icms_value",
    "ICMS_ST": "parsed_icmsst_value",
    "FCP_ST": "parsed_fcpst_value",
    "IPI": "parsed_ipi_value",
}
ALLOWED_TAX_NAMES: List[str] = list(TAX_COLUMNS)

IPI_TAX_NAME = "IPI"

# Unnested tax expressions over the per-scenario columns of the revenue-tax union.
# FCP is reported from the destination ICMS share; ICMS adds destination,
# sender and own ICMS.
REVENUE_TAX_EXPRESSIONS: List[Tuple[str, str]] = [
    ("PIS", "COALESCE(pis, 0)"),
    ("Cofins", "COALESCE(cofins, 0)"),
    ("ISS", "COALESCE(iss, 0)"),
    ("IR", "COALESCE(ir, 0)"),
    ("FCP", "COALESCE(icms_dest, 0)"),
    ("ICMS", "COALESCE(icms_dest, 0) + COALESCE(icms_remet, 0) + COALESCE(icms, 0)"),
    ("IPI", "COALESCE(ipi, 0)"),
]
REVENUE_TAX_SOURCE_COLUMNS: List[Tuple[str, str]] = [
    ("pis", "parsed_pis_value"),
    ("cofins", "parsed_cofins_value"),
    ("iss", "parsed_iss_value"),
    ("ir", "parsed_ir_value"),
    ("icms_dest", "parsed_icm_dest_value"),
    ("icms_remet", "parsed_icm_remet_value"),
    ("icms", "parsed_icms_value"),
    ("ipi", "parsed_ipi_value"),
]

ST_TAX_EXPRESSIONS: List[Tuple[str, str]] = [
    ("ICMS_ST", "COALESCE(icms_st, 0)"),
    ("FCP_ST", "COALESCE(fcp_st, 0)"),
]
ST_TAX_SOURCE_COLUMNS: List[Tuple[str, str]] = [
    ("icms_st", "parsed_icmsst_value"),
    ("fcp_st", "parsed_fcpst_value"),
]


# =============================================================================
# EXPENSE LEDGER
# =============================================================================

class ExpenseGroup(str, Enum):
    """Expense groups as "<two-level code> + <description>" labels from the ledger."""
    IMPORT = "2.01 + Importação"
    TAXES = "2.02 + Tributárias"
    PERSONNEL = "2.03 + Despesas com Pessoal"
    ADMINISTRATIVE = "2.04 + Gerais e administrativas"
    MARKETING = "2.05 + Marketing / Comercial"
    FINANCIAL = "2.06 + Financeiras"
    OPERATING = "2.07 + Operacionais"
    TRADE_MARKETING = "2.08 + Trade Marketing"
    SERVICES = "2.09 + Serviços tomados"
    DISREGARDED = "2.10 + Desconsiderados"


# Cost-center groups deducted from operating income to reach EBITDA
EBITDA_GROUPS: Tuple[ExpenseGroup, ...] = (
    ExpenseGroup.IMPORT,
    ExpenseGroup.PERSONNEL,
    ExpenseGroup.ADMINISTRATIVE,
    ExpenseGroup.MARKETING,
    ExpenseGroup.OPERATING,
    ExpenseGroup.TRADE_MARKETING,
    ExpenseGroup.SERVICES,
)

# Groups placed at fixed positions of the statement rather than with the main groups
POSITIONED_GROUPS: Tuple[ExpenseGroup, ...] = (
    ExpenseGroup.IMPORT,
    ExpenseGroup.OPERATING,
    ExpenseGroup.FINANCIAL,
    ExpenseGroup.TAXES,
    ExpenseGroup.DISREGARDED,
)

# Groups that get a %-of-gross-revenue sibling row
PERCENT_OF_GROSS_GROUPS: Tuple[ExpenseGroup, ...] = (
    ExpenseGroup.OPERATING,
    ExpenseGroup.IMPORT,
    ExpenseGroup.PERSONNEL,
    ExpenseGroup.ADMINISTRATIVE,
    ExpenseGroup.MARKETING,
    ExpenseGroup.TRADE_MARKETING,
    ExpenseGroup.SERVICES,
    ExpenseGroup.FINANCIAL,
    ExpenseGroup.TAXES,
)

# Income taxes posted in the ledger, handled by the dedicated provision path
CSLL_MARKER = "CSLL"
IRPJ_MARKER = "IRPJ"

# Revenue-tax duplicates booked under the disregarded group
DUPLICATE_TAX_CATEGORIES = ("PIS", "COFINS")
DUPLICATE_TAX_PREFIX = "ICMS"


def group_description(group_label: str) -> str:
    """"2.07 + Operacionais" -> "Operacionais"."""
    parts = group_label.split(" + ", 1)
    return parts[1].strip() if len(parts) > 1 else ""


# =============================================================================
# FINANCIAL REVENUE
# =============================================================================

FINANCIAL_REVENUE_PARENT_CODES = ("1.01", "1.02")
FINANCIAL_REVENUE_EXCLUDED_CODES = ("1.01.99", "1.02.98")
SERVICE_REVENUE_CODE = "1.02.01"
TAXABLE_FINANCIAL_PARENT_CODE = "1.02"
INTEREST_INCOME_LABEL = "Multa e Juros"

# Row cap for every itemized drill-down
DETAIL_ROW_LIMIT = 300
# Row cap for family/product breakdown queries
BREAKDOWN_ROW_LIMIT = 500
