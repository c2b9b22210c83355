"""
Per-Viewer Session State

Holds what one dashboard viewer has on screen: the year tree, the year
it was built for, and the breakdowns fetched while expanding rows. The
builder and the pivots stay stateless; everything cached lives here.

Key Concepts:
- BreakdownCache: (node_id, year) -> CacheEntry(pending | ready | error)
- children_of: expansion resolved through a table keyed by NodeKind
- Stale results are dropped: after each await the session re-checks that
  the node is still expanded and the year is still the one on screen
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pnl_matrix.core.error_taxonomy import classify_error, log_classified
from pnl_matrix.core.financial_semantics import AccountLine, LINE_KINDS
from pnl_matrix.core.nodes import (
    NodeKind,
    PnLNode,
    breakdown_placeholders,
    financial_revenue_categories,
    financial_revenue_subgroups,
    loading_node,
)
from pnl_matrix.data.breakdowns import BreakdownService

logger = logging.getLogger(__name__)


class CacheStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


@dataclass
class CacheEntry:
    """State of one breakdown fetch."""
    status: CacheStatus
    data: List[PnLNode] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None


class BreakdownCache:
    """Breakdown results keyed by placeholder id and year."""

    def __init__(self):
        self._entries: Dict[Tuple[str, int], CacheEntry] = {}

    def get(self, node_id: str, year: int) -> Optional[CacheEntry]:
        return self._entries.get((node_id, year))

    def mark_pending(self, node_id: str, year: int):
        self._entries[(node_id, year)] = CacheEntry(CacheStatus.PENDING)

    def mark_ready(self, node_id: str, year: int, data: List[PnLNode]):
        self._entries[(node_id, year)] = CacheEntry(CacheStatus.READY, data=list(data))

    def mark_error(self, node_id: str, year: int, error: Dict[str, Any]):
        self._entries[(node_id, year)] = CacheEntry(CacheStatus.ERROR, error=error)

    def discard(self, node_id: str, year: int):
        self._entries.pop((node_id, year), None)

    def clear(self):
        self._entries.clear()

    def __contains__(self, key: Tuple[str, int]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class PnLSession:
    """
    One viewer's tree plus its lazily loaded breakdowns.

    Usage:
        session = PnLSession(nodes, 2025)
        placeholder = session.children_of(session.node("7"))[0]
        await session.load_breakdown(placeholder)
        families = session.children_of(placeholder)
    """

    def __init__(self, tree: List[PnLNode], year: int, breakdowns: Optional[BreakdownService] = None,
                 cache: Optional[BreakdownCache] = None):
        self.breakdowns = breakdowns or BreakdownService()
        self.cache = cache if cache is not None else BreakdownCache()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancelled: Set[asyncio.Future] = set()
        self._wanted: Set[str] = set()
        self._resolvers: Dict[NodeKind, Callable[[PnLNode], List[PnLNode]]] = {
            NodeKind.PLAIN: self._line_children,
            NodeKind.VOLUME_PARENT: self._line_children,
            NodeKind.BREAKDOWN: self._breakdown_children,
            NodeKind.GROUP: financial_revenue_subgroups,
            NodeKind.FINANCIAL_REVENUE_SUBGROUP: financial_revenue_categories,
        }
        self.set_tree(tree, year)

    def set_tree(self, tree: List[PnLNode], year: int):
        """Show a freshly built tree; in-flight fetches for the previous year are abandoned."""
        if getattr(self, "year", None) != year:
            self.cancel_all()
        self.tree = list(tree)
        self.year = year
        self._by_id = {n.id: n for n in self.tree}
        self._children: Dict[str, List[PnLNode]] = {}
        for node in self.tree:
            if node.parent_id is not None:
                self._children.setdefault(node.parent_id, []).append(node)

    def node(self, node_id: str) -> Optional[PnLNode]:
        return self._by_id.get(node_id)

    @property
    def roots(self) -> List[PnLNode]:
        return [n for n in self.tree if n.parent_id is None]

    # ==================== EXPANSION ====================

    def children_of(self, node: PnLNode) -> List[PnLNode]:
        resolver = self._resolvers.get(node.kind, self._tree_children)
        return resolver(node)

    def _tree_children(self, node: PnLNode) -> List[PnLNode]:
        return list(self._children.get(node.id, []))

    def _line_children(self, node: PnLNode) -> List[PnLNode]:
        try:
            line = AccountLine(node.id)
        except ValueError:
            return self._tree_children(node)
        if line in LINE_KINDS:
            return breakdown_placeholders(node) + self._tree_children(node)
        return self._tree_children(node)

    def _breakdown_children(self, node: PnLNode) -> List[PnLNode]:
        entry = self.cache.get(node.id, self.year)
        if entry is None:
            return []
        if entry.status is CacheStatus.PENDING:
            return [loading_node(node, self.year)]
        if entry.status is CacheStatus.READY:
            return list(entry.data)
        return []

    # ==================== LOADING ====================

    async def load_breakdown(self, node: PnLNode) -> Optional[CacheEntry]:
        """
        Fetch the children of a breakdown placeholder for the current year.

        Returns the cache entry, or None when the result was discarded
        because the node was collapsed or the year changed meanwhile.
        Cancelling the calling task propagates CancelledError.
        """
        ref = node.breakdown
        if ref is None:
            return None

        year = self.year
        self._wanted.add(node.id)
        entry = self.cache.get(node.id, year)
        if entry is not None and entry.status is not CacheStatus.ERROR:
            return entry

        self.cache.mark_pending(node.id, year)
        task = asyncio.ensure_future(self.breakdowns.resolve(ref, year))
        self._tasks[node.id] = task
        try:
            data = await task
        except asyncio.CancelledError:
            self.cache.discard(node.id, year)
            if task not in self._cancelled:
                # caller was cancelled, not the fetch
                raise
            logger.debug(f"Breakdown {node.id} for {year} cancelled")
            return None
        except Exception as e:
            classified = classify_error(e, operation="load_breakdown", context={"node_id": node.id, "year": year})
            log_classified(classified)
            if not self._still_wanted(node.id, year):
                self.cache.discard(node.id, year)
                return None
            self.cache.mark_error(node.id, year, classified.to_dict())
            return self.cache.get(node.id, year)
        finally:
            if self._tasks.get(node.id) is task:
                del self._tasks[node.id]
            self._cancelled.discard(task)

        if not self._still_wanted(node.id, year):
            logger.debug(f"Discarding stale breakdown {node.id} for {year}")
            self.cache.discard(node.id, year)
            return None
        self.cache.mark_ready(node.id, year, data)
        return self.cache.get(node.id, year)

    def _still_wanted(self, node_id: str, year: int) -> bool:
        return node_id in self._wanted and year == self.year

    def collapse(self, node_id: str):
        """Stop wanting a node; its fetch keeps running but the result is discarded."""
        self._wanted.discard(node_id)

    def cancel(self, node_id: str) -> bool:
        """Cancel the in-flight fetch for a placeholder, if any."""
        self._wanted.discard(node_id)
        task = self._tasks.get(node_id)
        if task is None or task.done():
            return False
        self._cancelled.add(task)
        task.cancel()
        return True

    def cancel_all(self):
        for node_id in list(self._tasks):
            self.cancel(node_id)
