"""Protocols for the pieces the engine talks to: accessor, evaluator, engine."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from sheetcalc.calc._types import CellConfig, CellPosition, CellRange, CellsBySheet


@runtime_checkable
class CellAccessor(Protocol):
    """Synchronous, read-only pull from the caller's cell store."""

    def __call__(self, sheet: str, position: CellPosition) -> CellConfig | None: ...


CellLookup = Callable[[CellPosition], Any]
RangeLookup = Callable[[CellRange], list[list[Any]]]


@runtime_checkable
class Evaluator(Protocol):
    """Pluggable formula evaluator.

    ``evaluate`` receives the formula text (leading ``=`` included), the cell
    being evaluated, and two callbacks resolving references to values. It
    returns the raw result (scalar, 2D list, ExcelError or tagged object) and
    raises ``FormulaError`` for syntax or evaluation failures.
    """

    def evaluate(
        self,
        text: str,
        position: CellPosition,
        on_cell: CellLookup,
        on_range: RangeLookup,
    ) -> Awaitable[Any]: ...

    def supported_functions(self) -> list[str]: ...


@runtime_checkable
class CalcEngine(Protocol):
    """Protocol for incremental recalculation engines."""

    async def calculate(
        self,
        sheet: str,
        position: CellPosition,
        text: Any,
        accessor: CellAccessor,
    ) -> CellsBySheet:
        """Set one cell and recompute everything that depends on it."""
        ...

    async def calculate_batch(
        self,
        sheet: str,
        changes: Mapping[int, Mapping[int, Any]],
        accessor: CellAccessor,
    ) -> CellsBySheet:
        """Apply simultaneous edits to *sheet* in a single pass."""
        ...

    async def calculate_cells(
        self,
        changes: Mapping[str, Mapping[int, Mapping[int, Any]]],
        accessor: CellAccessor,
    ) -> CellsBySheet:
        """Apply simultaneous edits across sheets in a single pass."""
        ...

    async def initialize(
        self,
        all_cells: Mapping[str, Mapping[int, Mapping[int, CellConfig]]],
        accessor: CellAccessor,
    ) -> CellsBySheet:
        """Build the graph from a snapshot and compute every formula."""
        ...
