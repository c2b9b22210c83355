"""
Label helpers for breakdown rows.

Product descriptions arrive from the invoicing system with channel
prefixes ("FS - ", "VA - ") and unit suffixes ("(KG)"), so the same
logical product shows up under several spellings.
"""
import re
import unicodedata

_PREFIX_TAG = re.compile(r"^\s*(FS|VA)\s*-\s*", re.IGNORECASE)
_UNIT_SUFFIX = re.compile(r"\s*\((CX|KG|UN)\)\s*$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_TRAILING_ANNOTATION = re.compile(r"^(.*?)\s*\(([^()]*)\)\s*$", re.DOTALL)
_NON_WORD = re.compile(r"\W+", re.ASCII)


def normalize_product_label(label: str) -> str:
    """
    Canonical product label.

    >>> normalize_product_label("FS - Widget  100g (KG)")
    'Widget 100g'
    """
    text = unicodedata.normalize("NFKC", label or "")
    text = _PREFIX_TAG.sub("", text)
    text = _UNIT_SUFFIX.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_volume_label(label: str) -> str:
    """
    Canonical "<product> (<unit>)" label for quantity breakdowns.

    The product part is normalized; the trailing unit annotation, which
    distinguishes boxes from kilograms, is kept.
    """
    text = unicodedata.normalize("NFKC", label or "")
    match = _TRAILING_ANNOTATION.match(text)
    if not match:
        return normalize_product_label(text)
    head, unit = match.groups()
    return f"{normalize_product_label(head)} ({unit.strip()})"


def slugify(label: str) -> str:
    """Id fragment for a label: every run of non-word characters becomes '_'."""
    return _NON_WORD.sub("_", label or "")


def sort_key(label: str) -> str:
    """
    Alphabetical key ignoring case and accents (pt-BR base sensitivity).

    "Água" sorts with "agua", before "Bebidas".
    """
    decomposed = unicodedata.normalize("NFD", label or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()
