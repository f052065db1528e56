"""Worksheet proxy: ``ws['A1']`` access over the workbook's cell store."""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from sheetcalc._utils import a1_to_rowcol
from sheetcalc.calc._types import CellConfig, CellPosition

if TYPE_CHECKING:
    from sheetcalc._workbook import Workbook


class Worksheet:
    """Proxy for a single worksheet in a Workbook.

    Assignments store raw content without recalculating; call
    ``Workbook.calculate()`` or ``Workbook.recalculate()`` for that.
    """

    __slots__ = ("_workbook", "_title")

    def __init__(self, workbook: Workbook, title: str) -> None:
        self._workbook = workbook
        self._title = title

    @property
    def title(self) -> str:
        return self._title

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------

    def __getitem__(self, key: str) -> CellConfig | None:
        """``ws['A1']`` -> CellConfig, or None for an empty cell."""
        row, col = a1_to_rowcol(key)
        return self.cell(row, col)

    def __setitem__(self, key: str, value: Any) -> None:
        """``ws['A1'] = 42`` stores the content of a cell."""
        row, col = a1_to_rowcol(key)
        self.set(row, col, value)

    def cell(self, row: int, column: int) -> CellConfig | None:
        """Cell config at 1-based (row, column)."""
        return self._workbook.get_cell_config(self._title, CellPosition(self._title, row, column))

    def set(self, row: int, column: int, value: Any) -> None:
        config = CellConfig.from_content(value)
        self._workbook._store(CellPosition(self._title, row, column), config)  # noqa: SLF001

    def value(self, key: str) -> Any:
        """Displayed value of a cell: the result for formulas, else the text."""
        config = self[key]
        if config is None:
            return None
        if config.is_formula:
            return config.error or config.result
        return config.text

    def iter_cells(self) -> Iterator[tuple[int, int, CellConfig]]:
        """Yield ``(row, col, config)`` in row-major order."""
        rows = self._workbook.cells.get(self._title, {})
        for row in sorted(rows):
            for col in sorted(rows[row]):
                yield row, col, rows[row][col]

    def __repr__(self) -> str:
        return f"<Worksheet \"{self._title}\">"
