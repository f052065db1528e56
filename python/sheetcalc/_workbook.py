"""Workbook: in-memory cell store that drives a RecalculationEngine.

The store holds :class:`~sheetcalc.calc._types.CellConfig` objects as a
``CellsBySheet`` mapping. It hands the engine an accessor and merges the
change sets the engine returns.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from sheetcalc._utils import a1_to_rowcol
from sheetcalc._worksheet import Worksheet
from sheetcalc.calc._types import CellConfig, CellPosition, CellsBySheet, get_cell, iter_cells

if TYPE_CHECKING:
    from sheetcalc.calc._engine import RecalculationEngine


class Workbook:
    """Ordered collection of worksheets over a single ``CellsBySheet`` store."""

    def __init__(self, engine: RecalculationEngine | None = None) -> None:
        """Create an empty workbook with a default 'Sheet'."""
        self._sheet_names: list[str] = ["Sheet"]
        self._sheets: dict[str, Worksheet] = {"Sheet": Worksheet(self, "Sheet")}
        self.cells: CellsBySheet = {}
        self._engine = engine

    @classmethod
    def from_cells(cls, cells: Mapping[str, Mapping[int, Mapping[int, Any]]]) -> Workbook:
        """Build a workbook from a ``sheet -> row -> col -> content`` mapping.

        Content may be a :class:`CellConfig`, its ``to_dict()`` mapping or raw
        input text.
        """
        wb = cls()
        wb._sheet_names = []
        wb._sheets = {}
        for sheet in cells:
            wb.create_sheet(sheet)
        for pos, value in iter_cells(cells):
            wb._store(pos, CellConfig.from_content(value))
        return wb

    # ------------------------------------------------------------------
    # Sheet access
    # ------------------------------------------------------------------

    @property
    def sheetnames(self) -> list[str]:
        return list(self._sheet_names)

    @property
    def active(self) -> Worksheet | None:
        """Return the first sheet, or None if no sheets exist."""
        if self._sheet_names:
            return self._sheets[self._sheet_names[0]]
        return None

    def __getitem__(self, name: str) -> Worksheet:
        if name not in self._sheets:
            raise KeyError(f"Worksheet '{name}' does not exist")
        return self._sheets[name]

    def __contains__(self, name: str) -> bool:
        return name in self._sheets

    def __iter__(self) -> Iterator[str]:
        return iter(self._sheet_names)

    def create_sheet(self, title: str) -> Worksheet:
        if title in self._sheets:
            raise ValueError(f"Sheet '{title}' already exists")
        self._sheet_names.append(title)
        ws = Worksheet(self, title)
        self._sheets[title] = ws
        return ws

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def get_cell_config(self, sheet: str, pos: CellPosition) -> CellConfig | None:
        """Accessor handed to the engine."""
        return get_cell(self.cells, CellPosition(sheet, pos.row, pos.col))

    def _store(self, pos: CellPosition, config: CellConfig) -> None:
        rows = self.cells.setdefault(pos.sheet, {})
        if config.is_empty:
            cols = rows.get(pos.row)
            if cols is not None:
                cols.pop(pos.col, None)
                if not cols:
                    del rows[pos.row]
            return
        rows.setdefault(pos.row, {})[pos.col] = config

    def apply(self, changes: Mapping[str, Mapping[int, Mapping[int, CellConfig]]]) -> None:
        """Merge an engine change set; empty configs delete the cell."""
        for pos, config in iter_cells(changes):
            self._store(pos, config)

    def snapshot(self) -> CellsBySheet:
        """Shallow copy of the store, safe to hand to ``initialize``."""
        return {sheet: {row: dict(cols) for row, cols in rows.items()} for sheet, rows in self.cells.items()}

    # ------------------------------------------------------------------
    # Recalculation
    # ------------------------------------------------------------------

    @property
    def engine(self) -> RecalculationEngine:
        if self._engine is None:
            from sheetcalc.calc._engine import RecalculationEngine

            self._engine = RecalculationEngine()
        return self._engine

    async def calculate(self) -> CellsBySheet:
        """Compute every formula in the workbook and store the results."""
        changes = await self.engine.initialize(self.snapshot(), self.get_cell_config)
        self.apply(changes)
        return changes

    async def recalculate(self, changes: Mapping[str, Any]) -> CellsBySheet:
        """Apply ``{"Sheet!A1": content}`` edits and recompute their dependents.

        All edits land in one pass, so a cell reading edits on several sheets
        is recomputed once, after every edit is visible.
        """
        by_sheet: dict[str, dict[int, dict[int, Any]]] = {}
        for ref, value in changes.items():
            sheet, _, coord = ref.rpartition("!")
            sheet = sheet.strip("'") or self._sheet_names[0]
            if sheet not in self._sheets:
                raise KeyError(f"Worksheet '{sheet}' does not exist")
            row, col = a1_to_rowcol(coord)
            by_sheet.setdefault(sheet, {}).setdefault(row, {})[col] = value

        result = await self.engine.calculate_cells(by_sheet, self.get_cell_config)
        self.apply(result)
        return result

    def __repr__(self) -> str:
        return f"<Workbook sheets={self._sheet_names}>"
