"""
Unit tests for the warehouse client.

The BigQuery client is replaced by a Mock; tests assert on the composed
SQL, the bound parameters and the typing of returned rows.
"""
from datetime import date
from unittest.mock import Mock

import pytest
from google.api_core import exceptions as google_exceptions

from config.settings import WarehouseConfig
from pnl_matrix.core.error_taxonomy import (
    BadRequestError,
    ConfigurationError,
    DataRetrievalError,
    ErrorCategory,
    UnsupportedCombinationError,
)
from pnl_matrix.core.financial_semantics import AccountKind, BreakdownDimension, TaxScenario
from pnl_matrix.tools.warehouse_client import WarehouseClient


def make_client(rows=None, table="proj.ds.nfe"):
    bq = Mock()
    bq.query.return_value.result.return_value = rows or []
    config = WarehouseConfig(project_id="p", keyfile="", table=table, location="")
    return WarehouseClient(config=config, client=bq), bq


def sent_sql(bq) -> str:
    return bq.query.call_args.args[0]


def sent_params(bq) -> dict:
    job_config = bq.query.call_args.kwargs["job_config"]
    return {p.name: p.value for p in job_config.query_parameters}


class TestAggregates:
    """Tests for the top-level aggregate fetchers."""

    def test_revenue_lines_bind_year_and_tag_kind(self):
        client, bq = make_client([
            {"period": "2025-01", "kind": "ReceitaBruta", "amount": 100},
            {"period": "2025-01", "kind": "Devolucao", "amount": "7.5"},
        ])

        rows = client.fetch_revenue_lines(2025)

        assert sent_params(bq) == {"year": 2025}
        assert "`proj.ds.nfe`" in sent_sql(bq)
        assert "UNION ALL" in sent_sql(bq)
        assert [(r.kind, r.amount) for r in rows] == [
            (AccountKind.GROSS_REVENUE, 100.0),
            (AccountKind.RETURNS, 7.5),
        ]

    def test_year_is_never_interpolated(self):
        client, bq = make_client()

        client.fetch_cogs_lines(2024)

        assert "2024" not in sent_sql(bq)
        assert "@year" in sent_sql(bq)

    def test_date_periods_become_month_keys(self):
        client, _ = make_client([{"period": date(2025, 3, 1), "amount": None}])

        rows = client.fetch_interest_income(2025)

        assert rows[0].period == "2025-03"
        assert rows[0].amount == 0.0

    def test_tax_rows_keep_name_and_scenario(self):
        client, bq = make_client([
            {"period": "2025-02", "tax_name": "ICMS", "scenario": "Devolucao", "amount": -3},
        ])

        rows = client.fetch_revenue_taxes(2025)

        assert (rows[0].tax_name, rows[0].scenario, rows[0].amount) == ("ICMS", "Devolucao", -3.0)
        assert "UNNEST" in sent_sql(bq)


class TestBreakdown:
    """Tests for fetch_breakdown."""

    def test_volume_breakdown_uses_quantity_and_unit_label(self):
        client, bq = make_client([{"label": "Bebidas (CX)", "period": "2025-01", "amount": 4}])

        rows = client.fetch_breakdown(2025, AccountKind.GROSS_REVENUE, BreakdownDimension.VOLUME_FAMILY)

        assert rows[0].label == "Bebidas (CX)"
        assert rows[0].kind is AccountKind.GROSS_REVENUE
        assert "FORMAT('%s (%s)'" in sent_sql(bq)

    def test_null_labels_are_dropped(self):
        client, _ = make_client([{"label": None, "period": "2025-01", "amount": 4}])

        assert client.fetch_breakdown(2025, AccountKind.COGS, BreakdownDimension.FAMILY) == []

    def test_volume_breakdown_of_cogs_is_rejected_before_query(self):
        client, bq = make_client()

        with pytest.raises(UnsupportedCombinationError):
            client.fetch_breakdown(2025, AccountKind.COGS, BreakdownDimension.VOLUME_PRODUCT)
        bq.query.assert_not_called()


class TestDetails:
    """Tests for the drill-down queries."""

    def test_item_details_bind_month(self):
        client, bq = make_client([{"product": "Widget", "invoice_count": 2, "total": "10.5"}])

        rows = client.fetch_item_details("2025-04", AccountKind.COGS)

        assert sent_params(bq) == {"ym": "2025-04"}
        assert rows[0].to_dict() == {"product": "Widget", "invoice_count": 2, "total": 10.5}

    @pytest.mark.parametrize("ym", ["2025-13", "2025-4", "abc", ""])
    def test_malformed_month_is_rejected_before_query(self, ym):
        client, bq = make_client()

        with pytest.raises(BadRequestError):
            client.fetch_item_details(ym, AccountKind.GROSS_REVENUE)
        bq.query.assert_not_called()

    def test_tax_details_filter_non_zero_and_sign_returns(self):
        client, bq = make_client()

        client.fetch_tax_details("2025-01", "PIS", TaxScenario.RETURN)

        sql = sent_sql(bq)
        assert "parsed_pis_value" in sql
        assert "!= 0" in sql
        assert "* -1" in sql

    def test_unknown_tax_is_rejected(self):
        client, bq = make_client()

        with pytest.raises(BadRequestError):
            client.fetch_tax_details("2025-01", "VAT", TaxScenario.SALE)
        bq.query.assert_not_called()


class TestFailures:
    """Tests for error wrapping."""

    def test_api_error_becomes_data_retrieval_error(self):
        client, bq = make_client()
        bq.query.side_effect = google_exceptions.ServiceUnavailable("down")

        with pytest.raises(DataRetrievalError) as exc_info:
            client.fetch_revenue_lines(2025)

        assert exc_info.value.category == ErrorCategory.UPSTREAM_UNAVAILABLE
        assert exc_info.value.context["source"] == "warehouse"

    def test_deadline_is_a_timeout(self):
        client, bq = make_client()
        bq.query.return_value.result.side_effect = google_exceptions.DeadlineExceeded("slow")

        with pytest.raises(DataRetrievalError) as exc_info:
            client.fetch_st_taxes(2025)

        assert exc_info.value.category == ErrorCategory.UPSTREAM_TIMEOUT

    @pytest.mark.parametrize("table", ["", "proj.ds.nfe; DROP TABLE x"])
    def test_bad_table_is_a_configuration_error(self, table):
        client, bq = make_client(table=table)

        with pytest.raises(ConfigurationError):
            client.fetch_revenue_lines(2025)
        bq.query.assert_not_called()
