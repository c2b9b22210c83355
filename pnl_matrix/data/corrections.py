"""
Correction Overlay

Manual adjustments for historical periods whose source data is known to
be incomplete. Corrections live in a YAML file, outside the code, keyed
by concept and period:

    gross_revenue:
      "2025-01":
        - amount: 1168710.89
    revenue_taxes:
      "2025-01":
        - {tax_name: ICMS, scenario: Venda, amount: 1520.33}
    cogs.family:
      "2025-01":
        - {label: Bebidas, amount: 310.5}

Key Concepts:
- Concept key: one fetcher's output ("gross_revenue"), or a breakdown of a
  line concept ("cogs.family", "gross_revenue.volume_product")
- Merge: additive, insert-if-absent; a correction never replaces or removes
- NOT idempotent: merging the same overlay twice counts it twice, callers
  apply the overlay exactly once per fetch
"""
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Optional, Union

import yaml

from config.settings import get_config
from pnl_matrix.core.error_taxonomy import ConfigurationError
from pnl_matrix.core.financial_semantics import (
    AccountKind,
    BreakdownDimension,
    Concept,
    KIND_CONCEPTS,
)
from pnl_matrix.core.labels import normalize_product_label, normalize_volume_label
from pnl_matrix.core.records import AggregateRow, FinancialRevenueRow, LedgerRow, TaxRow
from pnl_matrix.core.reporting_calendar import is_month_key, split_month_key
from pnl_matrix.tools.calculator import coerce_amount

logger = logging.getLogger(__name__)

CorrectionRecord = Union[AggregateRow, TaxRow, LedgerRow, FinancialRevenueRow]
KeyFunction = Callable[[Any], Hashable]

# Concepts whose rows carry only an amount
_AMOUNT_CONCEPTS = {
    Concept.GROSS_REVENUE, Concept.RETURNS, Concept.DISCOUNT,
    Concept.COGS, Concept.COGS_BONUS, Concept.COGS_LOSS, Concept.COGS_RETURN,
    Concept.INTEREST_INCOME,
}
_CONCEPT_KINDS: Dict[Concept, AccountKind] = {concept: kind for kind, concept in KIND_CONCEPTS.items()}


def merge_corrections(
    rows: List[Any],
    corrections: List[Any],
    key_fn: KeyFunction,
    relabel: Optional[Callable[[str], str]] = None,
) -> List[Any]:
    """
    Merge correction rows into fetched rows.

    For each correction, the first fetched row with the same key gets the
    correction's amount added; without a match the correction is appended,
    with its label passed through `relabel` when given. Inputs are not
    mutated.

    Args:
        rows: Fetched rows (dataclasses with an `amount` field)
        corrections: Correction rows of the same type
        key_fn: Row -> merge key (dimension label plus period, typically)
        relabel: Label normalizer applied to appended rows

    Returns:
        New list of rows
    """
    merged = list(rows)
    index: Dict[Hashable, int] = {}
    for position, row in enumerate(merged):
        index.setdefault(key_fn(row), position)

    for correction in corrections:
        key = key_fn(correction)
        position = index.get(key)
        if position is not None:
            current = merged[position]
            merged[position] = replace(current, amount=current.amount + correction.amount)
        else:
            if relabel is not None:
                correction = replace(correction, label=relabel(correction.label))
            index[key] = len(merged)
            merged.append(correction)
    return merged


# ==================== KEYS PER CONCEPT ====================

def period_key(row) -> Hashable:
    return row.period


def tax_key(row: TaxRow) -> Hashable:
    return (row.period, row.tax_name, row.scenario)


def ledger_key(row: LedgerRow) -> Hashable:
    return (row.period, row.group, row.category)


def financial_revenue_key(row: FinancialRevenueRow) -> Hashable:
    return (row.period, row.parent_code, row.category_code)


def label_key(row: AggregateRow) -> Hashable:
    return (row.period, row.label)


def product_key(row: AggregateRow) -> Hashable:
    return (row.period, normalize_product_label(row.label))


def volume_product_key(row: AggregateRow) -> Hashable:
    return (row.period, normalize_volume_label(row.label))


def breakdown_concept_key(kind: AccountKind, dimension: BreakdownDimension) -> str:
    """Overlay key of one breakdown: "cogs.family", "returns.volume_product"..."""
    return f"{kind.concept.value}.{dimension.value}"


def _key_for(concept_key: str):
    """(key_fn, relabel) used when merging corrections of a concept key."""
    if "." in concept_key:
        dimension = BreakdownDimension(concept_key.split(".", 1)[1])
        if dimension is BreakdownDimension.PRODUCT:
            return product_key, normalize_product_label
        if dimension is BreakdownDimension.VOLUME_PRODUCT:
            return volume_product_key, normalize_volume_label
        return label_key, None

    concept = Concept(concept_key)
    if concept in (Concept.REVENUE_TAXES, Concept.ST_TAXES):
        return tax_key, None
    if concept in (Concept.EXPENSES, Concept.TAX_EXPENSES):
        return ledger_key, None
    if concept is Concept.FINANCIAL_REVENUE:
        return financial_revenue_key, None
    return period_key, None


# ==================== FILE LOADING ====================

def _validate_concept_key(concept_key: str) -> None:
    if "." in concept_key:
        base, dimension = concept_key.split(".", 1)
        valid = (
            base in {c.value for c in _CONCEPT_KINDS}
            and dimension in {d.value for d in BreakdownDimension}
        )
    else:
        valid = concept_key in {c.value for c in Concept}
    if not valid:
        raise ConfigurationError(f"Unknown correction concept: {concept_key!r}",
                                 context={"concept": concept_key})


def _require(entry: Dict[str, Any], name: str, concept_key: str, period: str) -> str:
    value = entry.get(name)
    if value is None or value == "":
        raise ConfigurationError(
            f"Correction for {concept_key} {period} is missing '{name}'",
            context={"concept": concept_key, "period": period},
        )
    return str(value)


def _build_row(concept_key: str, period: str, entry: Dict[str, Any]) -> CorrectionRecord:
    """One YAML entry -> the row type the concept's fetcher returns."""
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Correction for {concept_key} {period} must be a mapping")
    amount = coerce_amount(entry.get("amount"))

    if "." in concept_key:
        return AggregateRow(
            period=period,
            amount=amount,
            label=_require(entry, "label", concept_key, period),
        )

    concept = Concept(concept_key)
    if concept in _AMOUNT_CONCEPTS:
        return AggregateRow(period=period, amount=amount, kind=_CONCEPT_KINDS.get(concept))
    if concept in (Concept.REVENUE_TAXES, Concept.ST_TAXES):
        return TaxRow(
            period=period,
            tax_name=_require(entry, "tax_name", concept_key, period),
            scenario=_require(entry, "scenario", concept_key, period),
            amount=amount,
        )
    if concept in (Concept.EXPENSES, Concept.TAX_EXPENSES):
        return LedgerRow(
            period=period,
            group=_require(entry, "group", concept_key, period),
            category=_require(entry, "category", concept_key, period),
            amount=amount,
        )
    return FinancialRevenueRow(
        period=period,
        parent_code=_require(entry, "parent_code", concept_key, period),
        parent_label=_require(entry, "parent_label", concept_key, period),
        category_code=_require(entry, "category_code", concept_key, period),
        category_label=_require(entry, "category_label", concept_key, period),
        amount=amount,
    )


def parse_corrections(document: Any) -> Dict[str, List[CorrectionRecord]]:
    """
    Validate a loaded corrections document.

    Returns:
        Concept key -> correction rows, every period included

    Raises:
        ConfigurationError: Unknown concept, malformed period or entry
    """
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigurationError("Corrections file must map concepts to periods")

    parsed: Dict[str, List[CorrectionRecord]] = {}
    for concept_key, periods in document.items():
        concept_key = str(concept_key)
        _validate_concept_key(concept_key)
        if not isinstance(periods, dict):
            raise ConfigurationError(f"Corrections for {concept_key} must map periods to rows")

        rows: List[CorrectionRecord] = []
        for period, entries in periods.items():
            period = str(period)
            if not is_month_key(period):
                raise ConfigurationError(
                    f"Invalid correction period {period!r} for {concept_key}",
                    context={"concept": concept_key, "period": period},
                )
            for entry in entries or []:
                rows.append(_build_row(concept_key, period, entry))
        parsed[concept_key] = rows
    return parsed


class CorrectionOverlay:
    """
    Reloadable correction file.

    The file is re-read whenever its modification time changes; a missing
    file means no corrections.
    """

    def __init__(self, path: Optional[Path] = None, data: Optional[Dict[str, List[CorrectionRecord]]] = None):
        self.path = Path(path) if path else None
        self._data: Dict[str, List[CorrectionRecord]] = data or {}
        self._mtime: Optional[float] = None

    @classmethod
    def from_dict(cls, document: Dict[str, Any]) -> "CorrectionOverlay":
        """Overlay over an in-memory document (no file)."""
        return cls(data=parse_corrections(document))

    def _refresh(self):
        if self.path is None:
            return
        if not self.path.exists():
            if self._mtime is not None:
                logger.info(f"Corrections file removed: {self.path}")
            self._data, self._mtime = {}, None
            return

        mtime = self.path.stat().st_mtime
        if mtime == self._mtime:
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Corrections file is not valid YAML: {e}",
                                     context={"path": str(self.path)}) from e

        self._data = parse_corrections(document)
        self._mtime = mtime
        total = sum(len(rows) for rows in self._data.values())
        logger.info(f"Loaded {total} correction rows for {len(self._data)} concepts from {self.path}")

    def rows_for(self, concept_key: Union[Concept, str], year: int) -> List[CorrectionRecord]:
        """Correction rows of one concept whose period falls in the year."""
        concept_key = concept_key.value if isinstance(concept_key, Concept) else str(concept_key)
        _validate_concept_key(concept_key)
        self._refresh()
        return [r for r in self._data.get(concept_key, []) if split_month_key(r.period)[0] == year]

    def apply(self, concept_key: Union[Concept, str], year: int, rows: List[Any]) -> List[Any]:
        """Fetched rows of one concept with that year's corrections merged in."""
        concept_key = concept_key.value if isinstance(concept_key, Concept) else str(concept_key)
        corrections = self.rows_for(concept_key, year)
        if not corrections:
            return rows
        key_fn, relabel = _key_for(concept_key)
        logger.info(f"Applying {len(corrections)} corrections to {concept_key} for {year}")
        return merge_corrections(rows, corrections, key_fn, relabel)


# Global overlay instance
_overlay: Optional[CorrectionOverlay] = None


def get_correction_overlay() -> CorrectionOverlay:
    """Get the overlay backed by the configured corrections file."""
    global _overlay
    if _overlay is None:
        _overlay = CorrectionOverlay(get_config().corrections.path)
    return _overlay


def reset_correction_overlay():
    """Reset the global overlay (for testing)."""
    global _overlay
    _overlay = None
