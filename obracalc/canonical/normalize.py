"""Text, unit and locale-number normalization.

Spanish price books write numbers with ``,`` as the decimal separator and
``.`` as the thousands separator ("1.200,50" is one thousand two hundred
euros and fifty cents). Every numeric value that comes back from the
extraction model goes through ``parse_locale_number`` before it reaches a
``CatalogRecord``.

The canonical search string built by ``build_search_text`` is shared by
the ingestion enricher and the query side of the resolver; both must use
it so stored and query vectors live in the same space.
"""

from __future__ import annotations

import re
import unicodedata
from decimal import Decimal, InvalidOperation

_UNIT_ALIASES = {
    "m2": "m²",
    "m²": "m²",
    "m^2": "m²",
    "mt2": "m²",
    "sqm": "m²",
    "m3": "m³",
    "m³": "m³",
    "m^3": "m³",
    "m": "m",
    "ml": "ml",
    "u": "ud",
    "ud": "ud",
    "uds": "ud",
    "un": "ud",
    "ea": "ud",
    "kg": "kg",
    "h": "h",
    "hr": "h",
    "pa": "pa",
    "p.a.": "pa",
}

_THOUSANDS_GROUPED = re.compile(r"^-?\d{1,3}(\.\d{3})+$")
_NUMBER_NOISE = re.compile(r"[€$\s ]")


def normalize_text(text: str | None) -> str:
    """Normalize text for comparison.

    Lowercases, strips accents (NFKD decomposition without combining
    marks) and collapses whitespace. "Cuadro Eléctrico" and
    "cuadro electrico" normalize to the same string.
    """
    if not text:
        return ""

    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower()
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def normalize_unit(unit: str | None) -> str:
    """Normalize a unit symbol to its canonical spelling (m², m³, ud, ...).

    Unknown units are returned lowercased and stripped.
    """
    if not unit:
        return ""

    cleaned = unit.strip().lower()
    return _UNIT_ALIASES.get(cleaned, cleaned)


def parse_locale_number(value: str | int | float | Decimal | None) -> Decimal | None:
    """Parse a locale-formatted number from a Spanish price book.

    Rules:
    - A comma is always the decimal separator; any dots are thousands
      separators ("1.200,50" -> 1200.50, "30,00" -> 30.00).
    - Without a comma, dots that form 3-digit groups are thousands
      separators ("1.200" -> 1200, "1.200.000" -> 1200000).
    - Otherwise a single dot is a decimal point ("12.5" -> 12.5), which
      covers values the model already returned in machine format.

    Currency symbols and whitespace are ignored. Returns None for empty
    or unparseable input.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    raw = _NUMBER_NOISE.sub("", value)
    if not raw:
        return None

    if "," in raw:
        raw = raw.replace(".", "").replace(",", ".")
    elif _THOUSANDS_GROUPED.match(raw):
        raw = raw.replace(".", "")

    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def build_search_text(
    description: str,
    chapter: str | None = None,
    section: str | None = None,
    code: str | None = None,
    unit: str | None = None,
) -> str:
    """Build the canonical "context > description (code unit)" string.

    Empty context levels are skipped; the suffix is omitted when neither
    code nor unit is known.
    """
    parts = [p.strip() for p in (chapter, section) if p and p.strip()]
    parts.append(description.strip())
    text = " > ".join(parts)

    suffix = " ".join(p for p in (code or "", normalize_unit(unit)) if p)
    if suffix:
        text = f"{text} ({suffix})"
    return text
