"""A1-notation helpers shared by the workbook proxies and the calc engine."""

from __future__ import annotations

import re

# Excel's limits: XFD columns, 1048576 rows.
MAX_COL = 16384
MAX_ROW = 1048576

_A1_RE = re.compile(r"^\$?([A-Za-z]{1,3})\$?(\d+)$")


def column_index(letters: str) -> int:
    """``"A"`` -> 1, ``"AA"`` -> 27."""
    idx = 0
    for ch in letters.upper():
        if not "A" <= ch <= "Z":
            raise ValueError(f"Invalid column letters: {letters!r}")
        idx = idx * 26 + (ord(ch) - ord("A") + 1)
    return idx


def column_letters(col: int) -> str:
    """1 -> ``"A"``, 27 -> ``"AA"``."""
    if col < 1:
        raise ValueError(f"Column index must be >= 1, got {col}")
    letters = ""
    while col:
        col, rem = divmod(col - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def a1_to_rowcol(ref: str) -> tuple[int, int]:
    """Convert ``"B3"`` (dollar signs allowed) to 1-based ``(3, 2)``."""
    m = _A1_RE.match(ref.strip())
    if not m:
        raise ValueError(f"Invalid cell reference: {ref!r}")
    return int(m.group(2)), column_index(m.group(1))


def rowcol_to_a1(row: int, col: int) -> str:
    """Convert 1-based ``(3, 2)`` to ``"B3"``."""
    if row < 1:
        raise ValueError(f"Row index must be >= 1, got {row}")
    return f"{column_letters(col)}{row}"


def in_bounds(row: int, col: int) -> bool:
    return 1 <= row <= MAX_ROW and 1 <= col <= MAX_COL
