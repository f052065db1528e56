"""Static reference extraction: which cells and ranges a formula reads."""

from __future__ import annotations

import re

from sheetcalc._utils import column_index, in_bounds
from sheetcalc.calc._types import CellPosition, CellRange, Reference

# ---------------------------------------------------------------------------
# Regex patterns for A1 reference extraction
# ---------------------------------------------------------------------------

# Sheet prefix: 'Quoted Name'! or Bare_Name!
_SHEET_PREFIX = r"(?:'((?:[^']|'')+)'!|([A-Za-z0-9_.]+)!)"
# Cell: A1, $A$1, $A1, A$1
_CELL = r"\$?([A-Za-z]{1,3})\$?(\d+)"

# A reference must not be glued to an identifier on either side, so function
# names such as LOG10( and tokens such as A1B never match.
_REF_RE = re.compile(
    rf"(?<![A-Za-z0-9_.$']){_SHEET_PREFIX}?{_CELL}(?:\s*:\s*{_CELL})?(?![A-Za-z0-9_(!])",
)

_FULL_REF_RE = re.compile(rf"^\s*{_SHEET_PREFIX}?{_CELL}(?:\s*:\s*{_CELL})?\s*$")

_FUNC_RE = re.compile(r"([A-Z][A-Z0-9_.]*)\s*\(", re.IGNORECASE)

# String literals with "" escapes.
_STRING_RE = re.compile(r'"(?:[^"]|"")*"')


def _strip_strings(formula: str) -> str:
    """Blank out string literals so refs inside quotes aren't matched."""
    return _STRING_RE.sub('""', formula)


def _build_reference(match: re.Match[str], current_sheet: str) -> Reference | None:
    quoted, bare, col1, row1, col2, row2 = match.groups()
    if quoted is not None:
        sheet = quoted.replace("''", "'")
    else:
        sheet = bare or current_sheet
    r1, c1 = int(row1), column_index(col1)
    if not in_bounds(r1, c1):
        return None
    if col2 is None:
        return CellPosition(sheet, r1, c1)
    r2, c2 = int(row2), column_index(col2)
    if not in_bounds(r2, c2):
        return None
    return CellRange.of(sheet, r1, c1, r2, c2)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def parse_reference(token: str, current_sheet: str) -> Reference | None:
    """Parse one reference token (``A1``, ``$B$2``, ``'My Sheet'!A1:B3``).

    Returns None when the token is not a reference or points outside the grid.
    """
    m = _FULL_REF_RE.match(token)
    if not m:
        return None
    return _build_reference(m, current_sheet)


def parse_functions(formula: str) -> list[str]:
    """Extract all function names used in a formula, upper-cased, in order."""
    clean = _strip_strings(formula)
    funcs: list[str] = []
    seen: set[str] = set()
    for m in _FUNC_RE.finditer(clean):
        name = m.group(1).upper()
        if name not in seen:
            funcs.append(name)
            seen.add(name)
    return funcs


def expand_range(range_ref: str, current_sheet: str) -> list[CellPosition]:
    """Expand ``"A1:B2"`` into its cells, row-major."""
    ref = parse_reference(range_ref, current_sheet)
    if ref is None:
        raise ValueError(f"Invalid range: {range_ref!r}")
    if isinstance(ref, CellPosition):
        return [ref]
    return list(ref.positions())


def extract_references(formula: str, current_sheet: str) -> list[Reference]:
    """All references in *formula*, in order of first appearance, deduplicated."""
    if not isinstance(formula, str) or not formula.startswith("="):
        return []
    refs: list[Reference] = []
    seen: set[Reference] = set()
    for m in _REF_RE.finditer(_strip_strings(formula)):
        ref = _build_reference(m, current_sheet)
        if ref is not None and ref not in seen:
            refs.append(ref)
            seen.add(ref)
    return refs


class DependencyExtractor:
    """Discovers the cells and ranges a formula reads without evaluating it.

    Relative references are anchored on ``position.sheet``; ``$`` markers are
    accepted and ignored, exactly as the evaluator treats them.
    """

    def extract(self, text: str | None, position: CellPosition) -> list[Reference]:
        if not text:
            return []
        return extract_references(text, position.sheet)

    def functions(self, text: str | None) -> list[str]:
        if not text:
            return []
        return parse_functions(text)
