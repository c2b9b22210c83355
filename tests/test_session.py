"""
Tests for per-viewer session state: expansion, lazy breakdown loading,
stale-result discarding and cancellation.
"""
import asyncio

import pytest

from pnl_matrix.api.session import BreakdownCache, CacheStatus, PnLSession
from pnl_matrix.core.error_taxonomy import DataRetrievalError
from pnl_matrix.core.financial_semantics import AccountKind, BreakdownDimension
from pnl_matrix.core.nodes import BreakdownRef, NodeKind, PnLNode
from pnl_matrix.core.reporting_calendar import empty_year


class GatedBreakdowns:
    """Breakdown resolver that can be held open until a gate is set."""

    def __init__(self, nodes=None):
        self.nodes = nodes or []
        self.error = None
        self.gate = None
        self.calls = []

    async def resolve(self, ref, year):
        self.calls.append((ref, year))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.nodes)


def line(node_id, kind=NodeKind.PLAIN, parent_id=None, meta=None):
    return PnLNode(id=node_id, label=node_id, values=empty_year(2025), parent_id=parent_id,
                   kind=kind, meta=meta or {})


def family(label):
    return PnLNode(id=f"7_fam_{label}", label=label, values=empty_year(2025), parent_id="7", kind=NodeKind.FAMILY)


FR_BY_SUP = [{
    "supLabel": "Receitas Financeiras",
    "vals": {"2025-01": 45.0},
    "cats": [
        {"catLabel": "Aplicações", "vals": {"2025-01": 40.0}},
        {"catLabel": "Multa e Juros", "vals": {"2025-01": 5.0}},
    ],
}]


@pytest.fixture
def tree():
    return [
        line("1"),
        line("1_volumes", kind=NodeKind.VOLUME_PARENT),
        line("7"),
        line("7_percGross", kind=NodeKind.PERCENTAGE),
        line("op", kind=NodeKind.INTERMEDIATE),
        line("group_2_04"),
        line("group_2_04_Aluguel", parent_id="group_2_04"),
        line("financial_revenue", kind=NodeKind.GROUP, meta={"frBySup": FR_BY_SUP}),
    ]


@pytest.fixture
def breakdowns():
    return GatedBreakdowns([family("Bebidas"), family("Snacks")])


@pytest.fixture
def session(tree, breakdowns):
    return PnLSession(tree, 2025, breakdowns=breakdowns)


def placeholder(session, node_id="7", index=0):
    return session.children_of(session.node(node_id))[index]


class TestExpansion:
    """Tests for children_of."""

    def test_line_gets_family_and_product_placeholders(self, session):
        children = session.children_of(session.node("7"))

        assert [c.id for c in children] == ["7_breakdown_familia", "7_breakdown_produto"]
        assert all(c.kind == NodeKind.BREAKDOWN for c in children)
        assert children[1].breakdown == BreakdownRef(BreakdownDimension.PRODUCT, AccountKind.COGS)

    def test_volume_parent_gets_quantity_placeholders(self, session):
        children = session.children_of(session.node("1_volumes"))

        assert children[0].breakdown == BreakdownRef(BreakdownDimension.VOLUME_FAMILY, AccountKind.GROSS_REVENUE)

    def test_lines_without_breakdowns_have_tree_children(self, session):
        assert session.children_of(session.node("op")) == []
        assert session.children_of(session.node("7_percGross")) == []

    def test_expense_group_lists_its_categories(self, session):
        assert [c.id for c in session.children_of(session.node("group_2_04"))] == ["group_2_04_Aluguel"]

    def test_financial_revenue_levels(self, session):
        subgroups = session.children_of(session.node("financial_revenue"))

        assert [s.label for s in subgroups] == ["Receitas Financeiras"]
        assert subgroups[0].kind == NodeKind.FINANCIAL_REVENUE_SUBGROUP

        categories = session.children_of(subgroups[0])
        assert [c.label for c in categories] == ["Aplicações", "Multa e Juros"]
        assert categories[0].meta == {"parent": "Receitas Financeiras", "category": "Aplicações"}
        assert categories[0].values == {"2025-01": 40.0}

    def test_roots(self, session):
        assert "group_2_04_Aluguel" not in [n.id for n in session.roots]

    def test_unloaded_placeholder_has_no_children(self, session):
        assert session.children_of(placeholder(session)) == []


class TestLoading:
    """Tests for load_breakdown."""

    def test_loading_row_while_pending_then_data(self, session, breakdowns):
        target = placeholder(session)

        async def scenario():
            breakdowns.gate = asyncio.Event()
            load = asyncio.ensure_future(session.load_breakdown(target))
            await asyncio.sleep(0)
            pending = session.children_of(target)
            breakdowns.gate.set()
            return pending, await load

        pending, entry = asyncio.run(scenario())

        assert [n.kind for n in pending] == [NodeKind.LOADING]
        assert pending[0].parent_id == "7"
        assert entry.status is CacheStatus.READY
        assert [n.label for n in session.children_of(target)] == ["Bebidas", "Snacks"]

    def test_ready_entry_is_reused(self, session, breakdowns):
        target = placeholder(session)

        asyncio.run(session.load_breakdown(target))
        asyncio.run(session.load_breakdown(target))

        assert len(breakdowns.calls) == 1

    def test_node_without_breakdown_ref(self, session, breakdowns):
        assert asyncio.run(session.load_breakdown(session.node("7"))) is None
        assert breakdowns.calls == []

    def test_failure_is_cached_as_error_and_retried(self, session, breakdowns):
        target = placeholder(session)
        breakdowns.error = DataRetrievalError("down", source="warehouse")

        entry = asyncio.run(session.load_breakdown(target))

        assert entry.status is CacheStatus.ERROR
        assert entry.error["category"] == "UPSTREAM_UNAVAILABLE"
        assert session.children_of(target) == []

        breakdowns.error = None
        entry = asyncio.run(session.load_breakdown(target))

        assert entry.status is CacheStatus.READY
        assert len(breakdowns.calls) == 2


class TestStaleResults:
    """Tests for collapse, cancellation and year changes during a fetch."""

    def test_collapsed_node_result_is_discarded(self, session, breakdowns):
        target = placeholder(session)

        async def scenario():
            breakdowns.gate = asyncio.Event()
            load = asyncio.ensure_future(session.load_breakdown(target))
            await asyncio.sleep(0)
            session.collapse(target.id)
            breakdowns.gate.set()
            return await load

        assert asyncio.run(scenario()) is None
        assert len(session.cache) == 0

    def test_cancel_in_flight_fetch(self, session, breakdowns):
        target = placeholder(session)

        async def scenario():
            breakdowns.gate = asyncio.Event()
            load = asyncio.ensure_future(session.load_breakdown(target))
            await asyncio.sleep(0)
            cancelled = session.cancel(target.id)
            return cancelled, await load

        cancelled, entry = asyncio.run(scenario())

        assert cancelled is True
        assert entry is None
        assert (target.id, 2025) not in session.cache
        assert session.cancel(target.id) is False

    def test_cancelling_the_caller_propagates(self, session, breakdowns):
        target = placeholder(session)

        async def scenario():
            breakdowns.gate = asyncio.Event()
            load = asyncio.ensure_future(session.load_breakdown(target))
            await asyncio.sleep(0)
            load.cancel()
            with pytest.raises(asyncio.CancelledError):
                await load
            return load

        load = asyncio.run(scenario())

        assert load.cancelled()
        assert (target.id, 2025) not in session.cache
        assert session.cancel(target.id) is False

    def test_year_change_abandons_previous_year(self, session, breakdowns, tree):
        target = placeholder(session)

        async def scenario():
            breakdowns.gate = asyncio.Event()
            load = asyncio.ensure_future(session.load_breakdown(target))
            await asyncio.sleep(0)
            session.set_tree(tree, 2026)
            return await load

        assert asyncio.run(scenario()) is None
        assert session.year == 2026
        assert len(session.cache) == 0

    def test_same_year_rebuild_keeps_cache(self, session, tree):
        target = placeholder(session)
        asyncio.run(session.load_breakdown(target))

        session.set_tree(tree, 2025)

        assert len(session.children_of(target)) == 2


class TestBreakdownCache:
    """Tests for the cache itself."""

    def test_keyed_by_node_and_year(self):
        cache = BreakdownCache()
        cache.mark_ready("7_breakdown_familia", 2025, [])

        assert ("7_breakdown_familia", 2025) in cache
        assert cache.get("7_breakdown_familia", 2024) is None

        cache.clear()
        assert len(cache) == 0
