"""
Data layer module for the statement tree, breakdown pivots and manual corrections.
"""
from pnl_matrix.data.corrections import (
    CorrectionOverlay,
    breakdown_concept_key,
    get_correction_overlay,
    merge_corrections,
    parse_corrections,
    reset_correction_overlay,
)
from pnl_matrix.data.pnl_builder import (
    PnLBuilder,
    YearAggregates,
    build_year_tree,
    group_node_id,
    is_ignored_tax_expense,
    percent_of_gross_id,
    sub_node_id,
)
from pnl_matrix.data.breakdowns import (
    BreakdownService,
    breakdown_parent_id,
    fetch_family_breakdown,
    fetch_product_breakdown,
    fetch_volume_family_breakdown,
    fetch_volume_product_breakdown,
    pivot,
    pivot_cogs_family_percent,
    pivot_families,
    pivot_products,
)

__all__ = [
    # Correction overlay
    "CorrectionOverlay",
    "breakdown_concept_key",
    "get_correction_overlay",
    "merge_corrections",
    "parse_corrections",
    "reset_correction_overlay",
    # Tree builder
    "PnLBuilder",
    "YearAggregates",
    "build_year_tree",
    "group_node_id",
    "is_ignored_tax_expense",
    "percent_of_gross_id",
    "sub_node_id",
    # Breakdown pivots
    "BreakdownService",
    "breakdown_parent_id",
    "fetch_family_breakdown",
    "fetch_product_breakdown",
    "fetch_volume_family_breakdown",
    "fetch_volume_product_breakdown",
    "pivot",
    "pivot_cogs_family_percent",
    "pivot_families",
    "pivot_products",
]
