"""
Bundle line parser.

"2x Spring Rolls" -> qty 2, label "Spring Rolls"
"Spring Rolls"    -> qty 1, label "Spring Rolls"
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

BUNDLE_LINE_RE = re.compile(r"^(\d+)x\s+(.+)$", re.I | re.S)


@dataclass(frozen=True)
class BundleLine:
    label: str
    qty: int = 1
    note: Optional[str] = None


def parse_bundle_line(text: str) -> BundleLine:
    """Never fails; every string yields exactly one line."""
    raw = text or ""
    m = BUNDLE_LINE_RE.match(raw)
    if m:
        # "0x Naan" still means one portion; qty is never below 1
        return BundleLine(label=m.group(2).strip(), qty=max(int(m.group(1)), 1))
    return BundleLine(label=raw.strip(), qty=1)


def format_bundle_line(line: BundleLine) -> str:
    """Inverse of parse_bundle_line, used when exporting a bundle."""
    if line.qty == 1 and not BUNDLE_LINE_RE.match(line.label):
        return line.label
    return f"{line.qty}x {line.label}"
