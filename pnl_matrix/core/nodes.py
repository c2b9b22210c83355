"""
Statement Node Model

Every row of the matrix, whether built by the tree builder, produced by
a breakdown pivot or synthesized while expanding, is a PnLNode. The
`kind` tag tells consumers how to format and expand a node; nothing
downstream inspects id suffixes.

Key Concepts:
- Root line: node without parent_id
- Breakdown placeholder: "Familia"/"Produto" row whose children are fetched lazily;
  it carries a BreakdownRef naming the generator
- Percentage kinds hold ratios x 100, never amounts
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from pnl_matrix.core.financial_semantics import (
    AccountKind,
    AccountLine,
    BreakdownDimension,
    LINE_KINDS,
    VOLUME_LINES,
)
from pnl_matrix.core.labels import slugify
from pnl_matrix.core.reporting_calendar import MonthSeries

logger = logging.getLogger(__name__)


class NodeKind(str, Enum):
    """Variant tag governing how a node is formatted and expanded."""
    PLAIN = "plain"
    INTERMEDIATE = "intermediate"
    PERCENTAGE = "percentage"
    FAMILY = "family"
    LOADING = "loading"
    DETAIL_PERCENTAGE = "detailPercentage"
    VOLUME_PARENT = "volume_parent"
    GROUP = "group"
    FINANCIAL_REVENUE_SUBGROUP = "financial-revenue-subgroup"
    BREAKDOWN = "breakdown"

    @property
    def is_percentage(self) -> bool:
        return self in (NodeKind.PERCENTAGE, NodeKind.DETAIL_PERCENTAGE)


class Sign(str, Enum):
    PLUS = "+"
    MINUS = "-"


LOADING_LABEL = "Carregando…"
FAMILY_PLACEHOLDER_LABEL = "Familia"
PRODUCT_PLACEHOLDER_LABEL = "Produto"


@dataclass(frozen=True)
class BreakdownRef:
    """Typed reference from a placeholder node to the pivot that fills it."""
    dimension: BreakdownDimension
    kind: AccountKind

    @property
    def volume(self) -> bool:
        return self.dimension.is_volume

    def to_dict(self) -> Dict[str, Any]:
        base = BreakdownDimension.PRODUCT if self.dimension.is_product else BreakdownDimension.FAMILY
        return {"dimension": base.value, "kind": self.kind.value, "volume": self.volume}


@dataclass
class PnLNode:
    """
    One statement row.

    Attributes:
        id: Unique within a tree, stable for the same logical line across rebuilds
        label: Display name
        values: Month key -> amount, always the twelve months of the year
        parent_id: Parent row id, None for root lines
        sign: "+" or "-", informational only
        kind: Variant tag
        meta: Auxiliary payload (financial revenue sub-groups, drill-down keys, breakdown ref)
    """
    id: str
    label: str
    values: MonthSeries
    parent_id: Optional[str] = None
    sign: Optional[Sign] = None
    kind: NodeKind = NodeKind.PLAIN
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def breakdown(self) -> Optional[BreakdownRef]:
        return self.meta.get("breakdown")

    def value(self, month_key: str) -> float:
        return self.values.get(month_key, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        meta = dict(self.meta)
        if isinstance(meta.get("breakdown"), BreakdownRef):
            meta["breakdown"] = meta["breakdown"].to_dict()
        result: Dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "values": dict(self.values),
            "kind": self.kind.value,
        }
        if self.parent_id is not None:
            result["parentId"] = self.parent_id
        if self.sign is not None:
            result["sign"] = self.sign.value
        if meta:
            result["meta"] = meta
        return result


# =============================================================================
# NODES SYNTHESIZED ON EXPANSION
# =============================================================================

def breakdown_placeholders(node: PnLNode) -> List[PnLNode]:
    """
    "Familia" and "Produto" rows under a line that supports breakdowns.

    Volume parents get the quantity pivots, amount lines the amount pivots.
    Returns [] for any other line.
    """
    try:
        line = AccountLine(node.id)
    except ValueError:
        return []
    kind = LINE_KINDS.get(line)
    if kind is None:
        return []

    volume = line in VOLUME_LINES
    family = BreakdownDimension.VOLUME_FAMILY if volume else BreakdownDimension.FAMILY
    product = BreakdownDimension.VOLUME_PRODUCT if volume else BreakdownDimension.PRODUCT
    return [
        PnLNode(
            id=f"{node.id}_breakdown_familia",
            parent_id=node.id,
            label=FAMILY_PLACEHOLDER_LABEL,
            values={},
            kind=NodeKind.BREAKDOWN,
            meta={"breakdown": BreakdownRef(family, kind)},
        ),
        PnLNode(
            id=f"{node.id}_breakdown_produto",
            parent_id=node.id,
            label=PRODUCT_PLACEHOLDER_LABEL,
            values={},
            kind=NodeKind.BREAKDOWN,
            meta={"breakdown": BreakdownRef(product, kind)},
        ),
    ]


def loading_node(placeholder: PnLNode, year: int) -> PnLNode:
    """Single row shown while a placeholder's breakdown is in flight."""
    return PnLNode(
        id=f"loading_{placeholder.id}_{year}",
        parent_id=placeholder.parent_id,
        label=LOADING_LABEL,
        values={},
        kind=NodeKind.LOADING,
    )


def financial_revenue_subgroups(node: PnLNode) -> List[PnLNode]:
    """First level under the financial revenue group: one row per parent category."""
    result = []
    for group in node.meta.get("frBySup", []):
        result.append(PnLNode(
            id=f"{node.id}_{slugify(group['supLabel'])}",
            parent_id=node.id,
            label=group["supLabel"],
            values=dict(group["vals"]),
            kind=NodeKind.FINANCIAL_REVENUE_SUBGROUP,
            meta={"cats": group.get("cats", [])},
        ))
    return result


def financial_revenue_categories(node: PnLNode) -> List[PnLNode]:
    """Second level: category leaves, each carrying its drill-down key."""
    return [
        PnLNode(
            id=f"{node.id}_cat_{slugify(cat['catLabel'])}",
            parent_id=node.id,
            label=cat["catLabel"],
            values=dict(cat["vals"]),
            kind=NodeKind.FAMILY,
            meta={"parent": node.label, "category": cat["catLabel"]},
        )
        for cat in node.meta.get("cats", [])
    ]
