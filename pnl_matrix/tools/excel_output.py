"""
P&L Spreadsheet Export

Writes the statement matrix to a single-sheet workbook. Rows appear
depth-first with labels indented by level; percentage rows are stored as
fractions under a percent format so the spreadsheet shows the same
figures as the screen.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import openpyxl
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from config.export_styles import ExportStyle, get_export_style
from config.settings import get_config
from pnl_matrix.core.nodes import NodeKind, PnLNode
from pnl_matrix.core.observability import SpanKind, get_tracer
from pnl_matrix.core.reporting_calendar import month_header, month_keys

logger = logging.getLogger(__name__)

INDENT = "  "
LABEL_HEADER = "Conta"


@dataclass
class ExportColumn:
    """One spreadsheet column: row key, header text, and whether it is written."""
    key: str
    header: str
    hidden: bool = False


@dataclass
class ExcelOutput:
    """Container for Excel output."""
    file_path: str
    sheet_count: int
    row_count: int


def to_matrix(rows: List[Dict[str, Any]], columns: List[ExportColumn]) -> List[List[Any]]:
    """
    Header row of visible column headers followed by one list per row.

    >>> to_matrix([{"a": 1, "b": 2}], [ExportColumn("a", "A"), ExportColumn("b", "B", hidden=True)])
    [['A'], [1]]
    """
    visible = [c for c in columns if not c.hidden]
    return [[c.header for c in visible]] + [[row.get(c.key) for c in visible] for row in rows]


def export_columns(year: int) -> List[ExportColumn]:
    """Label column, the twelve month columns, and the hidden node id."""
    return (
        [ExportColumn("id", "Id", hidden=True), ExportColumn("label", LABEL_HEADER)]
        + [ExportColumn(m, month_header(m)) for m in month_keys(year)]
        + [ExportColumn("kind", "Tipo", hidden=True)]
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _walk(nodes: List[PnLNode]):
    """(node, depth) pairs, depth-first, siblings in input order."""
    ids = {n.id for n in nodes}
    children: Dict[str, List[PnLNode]] = {}
    roots: List[PnLNode] = []
    for node in nodes:
        if node.parent_id and node.parent_id in ids:
            children.setdefault(node.parent_id, []).append(node)
        else:
            roots.append(node)

    stack = [(node, 0) for node in reversed(roots)]
    while stack:
        node, depth = stack.pop()
        yield node, depth
        for child in reversed(children.get(node.id, [])):
            stack.append((child, depth + 1))


def build_export_rows(nodes: List[PnLNode], year: int) -> List[Dict[str, Any]]:
    """Row dicts keyed like export_columns: indented label, then a value per month."""
    rows = []
    for node, depth in _walk(nodes):
        row: Dict[str, Any] = {
            "id": node.id,
            "label": f"{INDENT * depth}{node.label}",
            "kind": node.kind.value,
        }
        for m in month_keys(year):
            value = node.value(m)
            row[m] = value / 100 if node.kind.is_percentage else _round_half_up(value)
        rows.append(row)
    return rows


def build_export_matrix(nodes: List[PnLNode], year: int) -> List[List[Any]]:
    """The statement as a 2D matrix, header row first."""
    return to_matrix(build_export_rows(nodes, year), export_columns(year))


class ExcelGenerator:
    """
    Generate the statement workbook with the dashboard's row styling.
    """

    def __init__(self, output_dir: Optional[str] = None, style: Optional[ExportStyle] = None):
        config = get_config().export
        self.output_dir = Path(output_dir or config.output_dir)
        self.sheet_name = config.sheet_name
        self.style = style or get_export_style()
        self._setup_styles()

    @staticmethod
    def _fill(color: str) -> PatternFill:
        return PatternFill(start_color=color.lstrip("#"), end_color=color.lstrip("#"), fill_type="solid")

    def _setup_styles(self):
        """Create reusable fills and fonts."""
        colors, typography = self.style.colors, self.style.typography

        self.header_fill = self._fill(colors.header_bg)
        self.header_font = Font(name=typography.family, size=typography.header_size,
                                bold=True, color=colors.header_text.lstrip("#"))

        self.intermediate_fill = self._fill(colors.intermediate_bg)
        self.intermediate_font = Font(name=typography.family, size=typography.body_size,
                                      bold=True, color=colors.intermediate_text.lstrip("#"))
        self.family_fill = self._fill(colors.family_bg)
        self.nested_fill = self._fill(colors.nested_bg)

        self.data_font = Font(name=typography.family, size=typography.body_size)
        self.cell_border = Border(bottom=Side(style="thin", color=colors.border.lstrip("#")))

    def _row_style(self, kind: str, depth: int):
        if kind in (NodeKind.INTERMEDIATE.value, NodeKind.PERCENTAGE.value):
            return self.intermediate_fill, self.intermediate_font
        if kind == NodeKind.FAMILY.value:
            return self.family_fill, self.data_font
        if depth > 0 or kind == NodeKind.DETAIL_PERCENTAGE.value:
            return self.nested_fill, self.data_font
        return None, self.data_font

    def write_pnl(self, nodes: List[PnLNode], year: int, file_name: Optional[str] = None) -> ExcelOutput:
        """
        Write the statement to PNL_<timestamp>.xlsx (or file_name) in the output directory.

        Returns:
            ExcelOutput with file path and metadata
        """
        with get_tracer().start_span("write_workbook", SpanKind.EXPORT, {"year": year}) as span:
            rows = build_export_rows(nodes, year)
            columns = export_columns(year)
            matrix = to_matrix(rows, columns)
            visible = [c for c in columns if not c.hidden]

            wb = openpyxl.Workbook()
            ws = wb.active
            ws.title = self.sheet_name

            for col_idx, header in enumerate(matrix[0], 1):
                cell = ws.cell(row=1, column=col_idx, value=header)
                cell.fill = self.header_fill
                cell.font = self.header_font
                cell.border = self.cell_border
                cell.alignment = Alignment(horizontal="center")

            for row_idx, (row, values) in enumerate(zip(rows, matrix[1:]), 2):
                depth = (len(row["label"]) - len(row["label"].lstrip(" "))) // len(INDENT)
                fill, font = self._row_style(row["kind"], depth)
                is_percentage = NodeKind(row["kind"]).is_percentage
                for col_idx, (column, value) in enumerate(zip(visible, values), 1):
                    cell = ws.cell(row=row_idx, column=col_idx, value=value)
                    cell.font = font
                    cell.border = self.cell_border
                    if fill is not None:
                        cell.fill = fill
                    if column.key != "label":
                        cell.number_format = self.style.percent_format if is_percentage else self.style.amount_format

            ws.column_dimensions["A"].width = self.style.label_column_width
            for col_idx in range(2, len(visible) + 1):
                ws.column_dimensions[get_column_letter(col_idx)].width = self.style.month_column_width
            ws.freeze_panes = self.style.freeze_panes

            self.output_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M")
            file_path = self.output_dir / (file_name or f"PNL_{timestamp}.xlsx")
            wb.save(file_path)

            if span:
                span.attributes["row_count"] = len(rows)

        logger.info(f"Exported {len(rows)} rows for {year} to {file_path}")
        return ExcelOutput(file_path=str(file_path), sheet_count=1, row_count=len(rows))


def get_excel_generator(output_dir: Optional[str] = None) -> ExcelGenerator:
    """Get Excel generator instance."""
    return ExcelGenerator(output_dir)
