"""
Line Parser: tab-delimited text -> menu document

Turns a raw text blob (pasted from a spreadsheet, or extracted from a PDF)
into candidate item records, one per line:

    <code> TAB <name> [TAB <price> [TAB <category>]]

Lines with fewer than two fields are skipped silently. The synthesized
document goes through storage.contracts like any JSON upload.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

from storage.errors import NoValidItems

DEFAULT_CATEGORY = "General"

_NON_PRICE_RX = re.compile(r"[^\d.]")
_WS_RUN_RX = re.compile(r"\s+")


@dataclass(frozen=True)
class LineRecord:
    code: str
    name: str
    price: float = 0.0
    category: str = DEFAULT_CATEGORY

    @property
    def category_id(self) -> str:
        return category_id_for(self.category)


def category_id_for(name: str) -> str:
    """'Hot Drinks' -> 'hot-drinks' (document-local id, not a slug)."""
    return _WS_RUN_RX.sub("-", name.lower())


def _parse_price(raw: Optional[str]) -> float:
    if not raw:
        return 0.0
    cleaned = _NON_PRICE_RX.sub("", raw)
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def parse_line(line: str, delimiter: str = "\t") -> Optional[LineRecord]:
    """Parse one line. Returns None for blank or single-field lines."""
    text = (line or "").strip()
    if not text:
        return None
    parts = text.split(delimiter)
    if len(parts) < 2:
        return None

    category = parts[3].strip() if len(parts) > 3 else ""
    return LineRecord(
        code=parts[0].strip(),
        name=parts[1].strip(),
        price=_parse_price(parts[2] if len(parts) > 2 else None),
        category=category or DEFAULT_CATEGORY,
    )


class TextMenuLines:
    """
    Lazy, restartable view over a text blob. Every iteration re-splits the
    source, so the same object can be walked more than once.
    """

    def __init__(self, text: str, delimiter: str = "\t"):
        self.text = text or ""
        self.delimiter = delimiter

    def __iter__(self) -> Iterator[LineRecord]:
        for line in self.text.splitlines():
            rec = parse_line(line, self.delimiter)
            if rec is not None:
                yield rec


def group_categories(records: Iterable[LineRecord]) -> List[Dict[str, Any]]:
    """
    One FOOD category per distinct category name, ordered by first
    appearance (case-sensitive).
    """
    seen: Dict[str, Dict[str, Any]] = {}
    for rec in records:
        if rec.category in seen:
            continue
        seen[rec.category] = {
            "id": rec.category_id,
            "name": rec.category,
            "sort": len(seen),
            "type": "FOOD",
        }
    return list(seen.values())


def build_document_from_text(
    text: str,
    *,
    restaurant: Optional[str] = None,
    delimiter: str = "\t",
) -> Dict[str, Any]:
    """
    Build a canonical menu document from a text blob.

    Raises NoValidItems when no line survives parsing.
    """
    lines = TextMenuLines(text, delimiter)
    records = list(lines)
    if not records:
        raise NoValidItems()

    return {
        "restaurant": restaurant,
        "currency": "EUR",
        "categories": group_categories(records),
        "items": [
            {
                "code": rec.code,
                "name": rec.name,
                "price": rec.price,
                "categoryId": rec.category_id,
                "description": "",
                "diet": {"veg": False, "vegan": False},
                "images": [],
                "tags": [],
                "options": [],
            }
            for rec in records
        ],
        "bundles": [],
    }
