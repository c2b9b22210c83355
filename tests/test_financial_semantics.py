"""
Unit tests for the Financial Semantics module.

Tests cover:
- Kind parsing and the kind -> line/concept maps
- Scenario filters per kind
- Tax scenario signs
- Expense group label helpers and ignore rules
"""
import pytest

from pnl_matrix.core.financial_semantics import (
    AccountKind,
    AccountLine,
    BreakdownDimension,
    Concept,
    COGS_KINDS,
    ExpenseGroup,
    LINE_KINDS,
    RETURN_FILTER,
    REVENUE_KINDS,
    SALE_FILTER,
    SCENARIOS,
    TaxScenario,
    VOLUME_KINDS,
    group_description,
)
from pnl_matrix.core.records import LedgerRow
from pnl_matrix.data.pnl_builder import is_ignored_tax_expense, is_income_tax_category


class TestAccountKind:
    """Tests for AccountKind."""

    def test_parse_known_values(self):
        assert AccountKind.parse("CPV_Devol") is AccountKind.COGS_RETURN
        assert AccountKind.parse("ReceitaBruta") is AccountKind.GROSS_REVENUE

    @pytest.mark.parametrize("raw", ["cpv", "Receita", "", None])
    def test_parse_unknown_values(self, raw):
        assert AccountKind.parse(raw) is None

    def test_line_and_concept(self):
        assert AccountKind.DISCOUNT.line is AccountLine.DISCOUNT
        assert AccountKind.COGS_LOSS.concept is Concept.COGS_LOSS

    def test_kind_sets_partition_the_kinds(self):
        assert set(REVENUE_KINDS) | set(COGS_KINDS) == set(AccountKind)
        assert set(VOLUME_KINDS) == {AccountKind.GROSS_REVENUE, AccountKind.RETURNS}

    def test_volume_lines_query_their_amount_kind(self):
        assert LINE_KINDS[AccountLine.RETURNS_VOLUME] is AccountKind.RETURNS
        assert LINE_KINDS[AccountLine.COGS] is AccountKind.COGS


class TestScenarios:
    """Tests for the warehouse scenario definitions."""

    def test_sales_and_cost_share_the_sale_filter(self):
        assert SCENARIOS[AccountKind.GROSS_REVENUE].filter_sql == SALE_FILTER
        assert SCENARIOS[AccountKind.COGS].filter_sql == SALE_FILTER

    def test_returns_share_the_return_filter(self):
        assert SCENARIOS[AccountKind.RETURNS].filter_sql == RETURN_FILTER
        assert SCENARIOS[AccountKind.COGS_RETURN].filter_sql == RETURN_FILTER

    def test_discount_restricts_sales_to_discounted_lines(self):
        discount = SCENARIOS[AccountKind.DISCOUNT].filter_sql

        assert discount.startswith(SALE_FILTER)
        assert "parsed_desconto_proportional_value" in discount

    def test_every_kind_has_a_scenario(self):
        assert set(SCENARIOS) == set(AccountKind)

    def test_tax_scenario_signs(self):
        assert TaxScenario.RETURN.sign_multiplier == -1
        assert TaxScenario.SALE.sign_multiplier == 1
        assert TaxScenario.parse("Bonificacao") is TaxScenario.BONUS
        assert TaxScenario.parse("Troca") is None

    def test_dimension_flags(self):
        assert BreakdownDimension.VOLUME_PRODUCT.is_product
        assert BreakdownDimension.VOLUME_PRODUCT.is_volume
        assert not BreakdownDimension.FAMILY.is_volume


class TestExpenseRules:
    """Tests for expense group helpers."""

    def test_group_description(self):
        assert group_description("2.07 + Operacionais") == "Operacionais"
        assert group_description("2.07") == ""

    @pytest.mark.parametrize("category,ignored", [
        ("PIS", True),
        ("cofins ", True),
        ("ICMS ST", True),
        ("Aluguel", False),
    ])
    def test_duplicate_revenue_taxes_under_disregarded_group(self, category, ignored):
        row = LedgerRow("2025-01", ExpenseGroup.DISREGARDED.value, category, 1.0)

        assert is_ignored_tax_expense(row) is ignored

    def test_same_category_elsewhere_is_kept(self):
        row = LedgerRow("2025-01", ExpenseGroup.TAXES.value, "PIS", 1.0)

        assert is_ignored_tax_expense(row) is False

    def test_income_tax_categories(self):
        assert is_income_tax_category("CSLL - Trimestral")
        assert is_income_tax_category("IRPJ")
        assert not is_income_tax_category("ISS")
