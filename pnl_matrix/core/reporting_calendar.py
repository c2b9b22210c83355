"""
Reporting Calendar Module

Month-key utilities for the P&L matrix. A reporting year is a plain
calendar year and every statement line carries exactly its twelve
months, keyed as "YYYY-MM".

Key Concepts:
- Month key: "2025-01" ... "2025-12"
- Month series: mapping of the twelve month keys to an amount, never sparse
"""
import re
from datetime import date
from typing import Dict, List, Optional, Tuple, Union

MONTH_KEY_PATTERN = re.compile(r"^[0-9]{4}-[0-9]{2}$")

MIN_YEAR = 2000
MAX_YEAR = 2100

MONTH_NAMES_PT = {
    1: "Janeiro",
    2: "Fevereiro",
    3: "Março",
    4: "Abril",
    5: "Maio",
    6: "Junho",
    7: "Julho",
    8: "Agosto",
    9: "Setembro",
    10: "Outubro",
    11: "Novembro",
    12: "Dezembro",
}

MonthSeries = Dict[str, float]


def month_keys(year: int) -> List[str]:
    """The twelve month keys of a year, in calendar order."""
    return [f"{year}-{m:02d}" for m in range(1, 13)]


def empty_year(year: int) -> MonthSeries:
    """A fresh month series with every month set to zero."""
    return {key: 0.0 for key in month_keys(year)}


def current_year(today: Optional[date] = None) -> int:
    return (today or date.today()).year


def is_month_key(value: str) -> bool:
    """True for a well-formed "YYYY-MM" key with a real month."""
    if not isinstance(value, str) or not MONTH_KEY_PATTERN.match(value):
        return False
    return 1 <= int(value[5:]) <= 12


def split_month_key(month_key: str) -> Tuple[int, int]:
    """Split "2025-03" into (2025, 3)."""
    return int(month_key[:4]), int(month_key[5:7])


def to_month_key(value: Union[str, date, None]) -> str:
    """
    Normalize a period value from a backing store to a month key.

    Stores return either "YYYY-MM" strings, full ISO dates, or date objects.
    """
    if value is None:
        return ""
    if isinstance(value, date):
        return f"{value.year}-{value.month:02d}"
    return str(value)[:7]


def parse_year(raw: Union[str, int, None]) -> Optional[int]:
    """
    Parse a year parameter.

    Returns None for anything that is not an integer within the supported range.
    """
    if raw is None or isinstance(raw, bool):
        return None
    try:
        year = int(str(raw).strip())
    except ValueError:
        return None

    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    return year


def month_header(month_key: str) -> str:
    """Portuguese month name for a month key (column headers)."""
    return MONTH_NAMES_PT[split_month_key(month_key)[1]]
