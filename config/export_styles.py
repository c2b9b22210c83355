"""
P&L Spreadsheet Styling

Centralized palette and typography for the exported matrix. Row colors
mirror the on-screen table so an exported sheet reads the same way.
"""
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ColorPalette:
    """Row and header colors (hex, no alpha)."""
    header_bg: str = "#F3F4F6"         # Light gray header
    header_text: str = "#111827"

    # Computed lines (net revenue, EBITDA, margins...)
    intermediate_bg: str = "#1E3A8A"   # Navy
    intermediate_text: str = "#FFFFFF"

    # Breakdown rows
    family_bg: str = "#D1FAE5"         # Emerald
    nested_bg: str = "#E3E6F1"         # Lavender for child and detail rows

    border: str = "#808080"


@dataclass
class Typography:
    """Font configuration."""
    family: str = "Arial Narrow"
    title_size: int = 14
    header_size: int = 11
    body_size: int = 10


@dataclass
class ExportStyle:
    """Complete export styling."""
    colors: ColorPalette = field(default_factory=ColorPalette)
    typography: Typography = field(default_factory=Typography)

    label_column_width: int = 48
    month_column_width: int = 14
    amount_format: str = "#,##0"
    percent_format: str = "0.0%"
    freeze_panes: str = "B2"


# Global instance
_export_style: Optional[ExportStyle] = None

def get_export_style() -> ExportStyle:
    """Get the global export style."""
    global _export_style
    if _export_style is None:
        _export_style = ExportStyle()
    return _export_style
