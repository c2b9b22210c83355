"""
HTTP route tests over the FastAPI application with in-memory stores.
"""
import pytest
from fastapi.testclient import TestClient

from pnl_matrix.api.app import create_app
from pnl_matrix.api.service import PnLService
from pnl_matrix.core.financial_semantics import AccountKind, BreakdownDimension, TaxScenario
from pnl_matrix.core.records import AggregateRow
from pnl_matrix.data.breakdowns import BreakdownService
from pnl_matrix.data.pnl_builder import PnLBuilder


@pytest.fixture
def client(warehouse, ledger, no_corrections):
    service = PnLService(
        builder=PnLBuilder(warehouse=warehouse, ledger=ledger, corrections=no_corrections),
        breakdowns=BreakdownService(warehouse=warehouse, corrections=no_corrections),
        warehouse=warehouse,
        ledger=ledger,
    )
    return TestClient(create_app(service=service))


class TestRoutes:
    """Tests for the dashboard routes."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_pnl_tree(self, client, warehouse):
        warehouse.revenue_lines = [AggregateRow("2025-01", 1000.0, kind=AccountKind.GROSS_REVENUE)]

        response = client.get("/api/pnl", params={"year": "2025"})

        assert response.status_code == 200
        rows = response.json()
        assert rows[0]["id"] == "1"
        assert rows[0]["values"]["2025-01"] == 1000.0

    def test_pnl_bad_year(self, client):
        response = client.get("/api/pnl", params={"year": "abc"})

        assert response.status_code == 400
        assert response.json()["category"] == "BAD_REQUEST"

    def test_pnl_upstream_failure(self, client, warehouse):
        warehouse.failing.add("fetch_revenue_lines")

        response = client.get("/api/pnl", params={"year": "2025"})

        assert response.status_code == 502
        assert response.json()["recoverable"] is True

    def test_nfe_family_breakdown(self, client, warehouse):
        warehouse.breakdowns[(AccountKind.GROSS_REVENUE, BreakdownDimension.FAMILY)] = [
            AggregateRow("2025-01", 10.0, label="Bebidas"),
        ]

        response = client.get("/api/nfe-details", params={"year": "2025", "kind": "ReceitaBruta",
                                                          "breakdown": "family"})

        assert response.status_code == 200
        assert response.json()[0]["id"] == "1_fam_Bebidas"

    def test_cogs_item_details(self, client, warehouse):
        response = client.get("/api/cogs-details", params={"ym": "2025-02", "kind": "CPV"})

        assert response.json() == [{"product": "Widget", "invoice_count": 3, "total": 120.0}]
        assert warehouse.calls == [("fetch_item_details", "2025-02", AccountKind.COGS)]

    def test_volume_of_cogs_is_unsupported(self, client):
        response = client.get("/api/volume-details", params={"year": "2025", "kind": "CPV",
                                                             "breakdown": "family"})

        assert response.status_code == 400
        assert response.json()["category"] == "UNSUPPORTED_COMBINATION"

    def test_tax_details_alias(self, client, warehouse):
        response = client.get("/api/tax-details", params={"ym": "2025-01", "taxName": "ICMS",
                                                          "scenario": "Bonificacao"})

        assert response.status_code == 200
        assert warehouse.calls == [("fetch_tax_details", "2025-01", "ICMS", TaxScenario.BONUS)]

    def test_expense_details(self, client, ledger):
        response = client.get("/api/despesa-details", params={"ym": "2025-01", "code": "2.04 + Gerais",
                                                              "cat": "Aluguel"})

        assert response.status_code == 200
        assert response.json()[0]["supplier"] == "ACME"
        assert ledger.calls == [("fetch_expense_details", "2025-01", "2.04 + Gerais", "Aluguel")]

    def test_expense_details_missing_category(self, client, ledger):
        response = client.get("/api/despesa-details", params={"ym": "2025-01", "code": "2.04 + Gerais"})

        assert response.status_code == 400
        assert ledger.calls == []

    def test_financial_revenue_aliases(self, client, ledger):
        response = client.get("/api/financial-revenue-details", params={
            "year": "2025", "month": "3", "catSup": "Receitas Financeiras", "catDesc": "Aplicações",
        })

        assert response.status_code == 200
        assert ledger.calls == [
            ("fetch_financial_revenue_details", "2025-03", "Receitas Financeiras", "Aplicações"),
        ]
