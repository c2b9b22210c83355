"""
Unit tests for the breakdown pivoters.

Tests cover:
- Grouping and monthly sums
- Product label normalization merge
- Locale-aware ordering
- COGS family percentage rows
- On-demand entry points and placeholder resolution
"""
import asyncio

import pytest

from pnl_matrix.core.error_taxonomy import UnsupportedCombinationError
from pnl_matrix.core.financial_semantics import AccountKind, AccountLine, BreakdownDimension
from pnl_matrix.core.nodes import BreakdownRef, NodeKind
from pnl_matrix.core.records import AggregateRow
from pnl_matrix.data.breakdowns import (
    BreakdownService,
    breakdown_parent_id,
    fetch_product_breakdown,
    fetch_volume_family_breakdown,
    pivot,
    pivot_cogs_family_percent,
    pivot_families,
    pivot_products,
)
from pnl_matrix.data.corrections import CorrectionOverlay


def row(label, period, amount):
    return AggregateRow(period=period, amount=amount, label=label)


class TestPivot:
    """Tests for pivot."""

    def test_sums_per_label_and_month(self):
        nodes = pivot_families([
            row("Bebidas", "2025-01", 10),
            row("Bebidas", "2025-01", 5),
            row("Bebidas", "2025-02", 1),
        ], "1", 2025)

        assert len(nodes) == 1
        assert nodes[0].values["2025-01"] == 15
        assert nodes[0].values["2025-02"] == 1
        assert len(nodes[0].values) == 12
        assert nodes[0].id == "1_fam_Bebidas"
        assert nodes[0].parent_id == "1"
        assert nodes[0].kind == NodeKind.FAMILY

    def test_product_labels_are_normalized_before_grouping(self):
        nodes = pivot_products([
            row("FS - Widget 100g (KG)", "2025-01", 10),
            row("Widget 100g", "2025-01", 5),
        ], "7", 2025)

        assert len(nodes) == 1
        assert nodes[0].label == "Widget 100g"
        assert nodes[0].values["2025-01"] == 15
        assert nodes[0].id == "7_prod_Widget_100g"

    def test_family_labels_are_not_normalized(self):
        nodes = pivot_families([row("FS - Bebidas", "2025-01", 1), row("Bebidas", "2025-01", 1)], "1", 2025)

        assert len(nodes) == 2

    def test_volume_product_keeps_unit(self):
        nodes = pivot([
            row("FS - Widget (CX)", "2025-01", 3),
            row("Widget (CX)", "2025-01", 2),
            row("Widget (KG)", "2025-01", 7),
        ], "1_volumes", 2025, BreakdownDimension.VOLUME_PRODUCT)

        assert {n.label: n.values["2025-01"] for n in nodes} == {"Widget (CX)": 5, "Widget (KG)": 7}

    def test_sorted_ignoring_case_and_accents(self):
        nodes = pivot_families([
            row("Café", "2025-01", 1),
            row("bebidas", "2025-01", 1),
            row("Água", "2025-01", 1),
        ], "1", 2025)

        assert [n.label for n in nodes] == ["Água", "bebidas", "Café"]

    def test_rows_without_label_are_skipped(self):
        nodes = pivot_families([AggregateRow("2025-01", 1, label=None)], "1", 2025)

        assert nodes == []


class TestCogsFamilyPercent:
    """Tests for the COGS family percentage pivot."""

    def test_each_family_followed_by_its_percentage(self):
        cogs = [row("Bebidas", "2025-01", 30), row("Snacks", "2025-01", 10)]
        revenue = [row("Bebidas", "2025-01", 120)]

        nodes = pivot_cogs_family_percent(cogs, revenue, 2025)

        assert [n.kind for n in nodes] == [
            NodeKind.FAMILY, NodeKind.DETAIL_PERCENTAGE, NodeKind.FAMILY, NodeKind.DETAIL_PERCENTAGE,
        ]
        assert nodes[1].id == "7_fam_Bebidas_percGross"
        assert nodes[1].parent_id == AccountLine.COGS.value
        assert nodes[1].values["2025-01"] == pytest.approx(25.0)
        # No matching revenue family
        assert nodes[3].values["2025-01"] == 0


class TestBreakdownService:
    """Tests for BreakdownService."""

    @pytest.fixture
    def service(self, warehouse, no_corrections):
        return BreakdownService(warehouse=warehouse, corrections=no_corrections)

    def test_parent_of_volume_breakdown_is_volume_line(self):
        assert breakdown_parent_id(AccountKind.RETURNS, BreakdownDimension.VOLUME_FAMILY) == "2_volumes"
        assert breakdown_parent_id(AccountKind.COGS_LOSS, BreakdownDimension.FAMILY) == "9"

    def test_fetch_pivots_rows(self, service, warehouse):
        warehouse.breakdowns[(AccountKind.COGS, BreakdownDimension.PRODUCT)] = [row("Widget", "2025-01", 4)]

        nodes = asyncio.run(service.fetch(2025, AccountKind.COGS, BreakdownDimension.PRODUCT))

        assert [n.id for n in nodes] == ["7_prod_Widget"]

    def test_corrections_applied_before_pivot(self, warehouse):
        warehouse.breakdowns[(AccountKind.GROSS_REVENUE, BreakdownDimension.FAMILY)] = [row("Bebidas", "2025-01", 4)]
        corrections = CorrectionOverlay.from_dict({
            "gross_revenue.family": {"2025-01": [{"label": "Bebidas", "amount": 6}]},
        })
        service = BreakdownService(warehouse=warehouse, corrections=corrections)

        nodes = asyncio.run(service.fetch(2025, AccountKind.GROSS_REVENUE, BreakdownDimension.FAMILY))

        assert nodes[0].values["2025-01"] == 10

    def test_volume_breakdown_of_cogs_is_unsupported(self, service):
        with pytest.raises(UnsupportedCombinationError):
            asyncio.run(service.fetch(2025, AccountKind.COGS, BreakdownDimension.VOLUME_FAMILY))

    def test_cogs_family_placeholder_resolves_with_percentages(self, service, warehouse):
        warehouse.breakdowns[(AccountKind.COGS, BreakdownDimension.FAMILY)] = [row("Bebidas", "2025-01", 30)]
        warehouse.breakdowns[(AccountKind.GROSS_REVENUE, BreakdownDimension.FAMILY)] = [row("Bebidas", "2025-01", 60)]

        nodes = asyncio.run(service.resolve(BreakdownRef(BreakdownDimension.FAMILY, AccountKind.COGS), 2025))

        assert [n.id for n in nodes] == ["7_fam_Bebidas", "7_fam_Bebidas_percGross"]
        assert nodes[1].values["2025-01"] == pytest.approx(50.0)
        fetched = {(c[2], c[3]) for c in warehouse.calls}
        assert fetched == {
            (AccountKind.COGS, BreakdownDimension.FAMILY),
            (AccountKind.GROSS_REVENUE, BreakdownDimension.FAMILY),
        }

    def test_other_placeholders_resolve_to_plain_pivot(self, service, warehouse):
        warehouse.breakdowns[(AccountKind.GROSS_REVENUE, BreakdownDimension.VOLUME_FAMILY)] = [
            row("Bebidas (CX)", "2025-01", 12),
        ]

        nodes = asyncio.run(service.resolve(
            BreakdownRef(BreakdownDimension.VOLUME_FAMILY, AccountKind.GROSS_REVENUE), 2025,
        ))

        assert nodes[0].parent_id == "1_volumes"
        assert nodes[0].label == "Bebidas (CX)"

    def test_module_entry_points(self, service, warehouse):
        warehouse.breakdowns[(AccountKind.RETURNS, BreakdownDimension.PRODUCT)] = [row("Widget", "2025-03", 2)]
        warehouse.breakdowns[(AccountKind.RETURNS, BreakdownDimension.VOLUME_FAMILY)] = [row("Doces (UN)", "2025-03", 9)]

        products = asyncio.run(fetch_product_breakdown(2025, AccountKind.RETURNS, service=service))
        volumes = asyncio.run(fetch_volume_family_breakdown(2025, AccountKind.RETURNS, service=service))

        assert products[0].parent_id == "2"
        assert volumes[0].parent_id == "2_volumes"
