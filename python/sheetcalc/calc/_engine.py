"""RecalculationEngine: incremental, dependency-driven recomputation.

Usage::

    engine = RecalculationEngine(functions={"DOUBLE": lambda args: args[0] * 2})
    changes = await engine.calculate("Sheet1", CellPosition("Sheet1", 1, 1), "=B1+1", store.get)
    merge_cells(store.cells, changes)

Each public operation runs one pass: the closure of the edited cells over the
reverse dependency edges is evaluated in dependency order (ready cells taken
row-major), and whatever never becomes ready is part of, or downstream of, a
cycle and receives a circular-reference error.
"""

from __future__ import annotations

import asyncio
import dataclasses
import heapq
import logging
from collections.abc import Callable, Mapping
from typing import Any

from sheetcalc.calc._cache import ValueCache
from sheetcalc.calc._errors import CIRCULAR_REFERENCE_MESSAGE, ExcelError
from sheetcalc.calc._formula import FormulaParser
from sheetcalc.calc._graph import DependencyGraph
from sheetcalc.calc._parser import DependencyExtractor
from sheetcalc.calc._protocol import CellAccessor, Evaluator
from sheetcalc.calc._types import (
    CellConfig,
    CellPosition,
    CellsBySheet,
    ParseResult,
    Reference,
    get_cell,
    iter_cells,
    set_cell,
)

logger = logging.getLogger(__name__)

CIRCULAR_REFERENCE_RESULT = ParseResult.failure(ExcelError.REF, CIRCULAR_REFERENCE_MESSAGE)


def _as_position(sheet: str, position: CellPosition | tuple[int, int]) -> CellPosition:
    if isinstance(position, CellPosition):
        if position.sheet == sheet:
            return position
        return CellPosition(sheet, position.row, position.col)
    row, col = position
    return CellPosition(sheet, int(row), int(col))


def _as_config(value: Any) -> CellConfig:
    if isinstance(value, CellConfig):
        return dataclasses.replace(value)
    return CellConfig.from_content(value)


class RecalculationEngine:
    """Owns the dependency graph and runs recomputation passes.

    The caller's cell store is only ever read through the accessor handed to
    each operation; results come back as a :data:`CellsBySheet` change set.
    Overlapping operations on one engine are queued on an internal lock so at
    most one pass is in flight.
    """

    def __init__(
        self,
        functions: Mapping[str, Callable[..., Any]] | None = None,
        evaluator: Evaluator | None = None,
        use_formulas: bool | None = None,
    ) -> None:
        self.graph = DependencyGraph()
        self.cache = ValueCache()
        self.extractor = DependencyExtractor()
        self.parser = FormulaParser(
            functions=functions,
            evaluator=evaluator,
            cache=self.cache,
            use_formulas=use_formulas,
        )
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def calculate(
        self,
        sheet: str,
        position: CellPosition | tuple[int, int],
        text: Any,
        accessor: CellAccessor,
    ) -> CellsBySheet:
        """Store *text* on one cell and recompute its dependents.

        The change set holds the target cell plus every cell whose result
        changed. Empty or None *text* clears the cell.
        """
        pos = _as_position(sheet, position)
        config = _as_config(text)
        async with self._lock:
            self._update_edges(pos, config)
            return await self._run_pass({pos: config}, set(), accessor)

    async def calculate_batch(
        self,
        sheet: str,
        changes: Mapping[int, Mapping[int, Any]],
        accessor: CellAccessor,
    ) -> CellsBySheet:
        """Apply simultaneous edits (row -> col -> content) to *sheet* in one pass.

        A cell depending on several edited cells is recomputed once.
        """
        return await self.calculate_cells({sheet: changes}, accessor)

    async def calculate_cells(
        self,
        changes: Mapping[str, Mapping[int, Mapping[int, Any]]],
        accessor: CellAccessor,
    ) -> CellsBySheet:
        """Apply simultaneous edits (sheet -> row -> col -> content) in one pass.

        Like :meth:`calculate_batch`, but the edits may span sheets.
        """
        edits: dict[CellPosition, CellConfig] = {}
        for pos, value in iter_cells(changes):
            edits[pos] = _as_config(value)
        async with self._lock:
            for pos in sorted(edits, key=lambda p: p.sort_key):
                self._update_edges(pos, edits[pos])
            return await self._run_pass(edits, set(), accessor)

    async def initialize(
        self,
        all_cells: Mapping[str, Mapping[int, Mapping[int, CellConfig]]],
        accessor: CellAccessor | None = None,
    ) -> CellsBySheet:
        """Rebuild the graph from a full snapshot and compute every formula.

        Cells in *all_cells* take precedence over *accessor*, so a freshly
        imported workbook can be initialized before the caller stores it.
        """
        snapshot: CellsBySheet = {}
        for pos, config in iter_cells(all_cells):
            set_cell(snapshot, pos, config if isinstance(config, CellConfig) else _as_config(config))

        def layered(sheet: str, pos: CellPosition) -> CellConfig | None:
            found = get_cell(snapshot, pos)
            if found is not None or accessor is None:
                return found
            return accessor(sheet, pos)

        async with self._lock:
            self.graph.clear()
            formula_cells: set[CellPosition] = set()
            for pos, config in sorted(iter_cells(snapshot), key=lambda item: item[0].sort_key):
                if config.is_formula:
                    self._update_edges(pos, config)
                    formula_cells.add(pos)
            return await self._run_pass({}, formula_cells, layered, report_all=True)

    def get_dependencies(self, text: str, position: CellPosition) -> list[Reference]:
        """References *text* would read if stored at *position*."""
        return self.extractor.extract(text, position)

    def supported_functions(self) -> list[str]:
        return self.parser.supported_functions()

    def reset(self) -> None:
        """Forget every formula and cached value."""
        self.graph.clear()
        self.cache.clear()

    # ------------------------------------------------------------------
    # Graph maintenance
    # ------------------------------------------------------------------

    def _update_edges(self, pos: CellPosition, config: CellConfig) -> None:
        if config.is_formula and config.text:
            self.graph.set_formula(pos, config.text, self.extractor.extract(config.text, pos))
        else:
            self.graph.remove_formula(pos)

    # ------------------------------------------------------------------
    # Recompute pass
    # ------------------------------------------------------------------

    async def _run_pass(
        self,
        edits: dict[CellPosition, CellConfig],
        extra_seeds: set[CellPosition],
        accessor: CellAccessor,
        report_all: bool = False,
    ) -> CellsBySheet:
        """Recompute the closure of ``edits`` and ``extra_seeds``.

        Literal edits are published to the cache before anything is
        evaluated. Every other closure cell is evaluated once its precedents
        inside the closure are done; the rest are cyclic.
        """
        self.cache.clear()
        changes: CellsBySheet = {}
        previous: dict[CellPosition, CellConfig | None] = {}

        for pos, config in edits.items():
            previous[pos] = self.parser.get_cell_config(pos, accessor)
            set_cell(changes, pos, config)
            if not config.is_formula:
                self.cache.set_override(pos, config)

        closure = self.graph.closure(set(edits) | extra_seeds)
        edges, in_degree = self.graph.subgraph(closure)
        ready = [(pos.sort_key, pos) for pos, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        evaluated = 0
        while ready:
            _, pos = heapq.heappop(ready)
            if await self._recompute(pos, edits, previous, accessor, changes, report_all):
                evaluated += 1
            for dep in edges[pos]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    heapq.heappush(ready, (dep.sort_key, dep))

        cyclic = sorted((pos for pos, degree in in_degree.items() if degree > 0), key=lambda p: p.sort_key)
        if cyclic:
            logger.debug("Circular reference involving: %s", ", ".join(map(str, cyclic)))
        for pos in cyclic:
            self._publish(pos, CIRCULAR_REFERENCE_RESULT, edits, previous, accessor, changes, report_all)

        logger.debug(
            "Pass over %d cell(s): %d evaluated, %d circular, %d changed",
            len(closure), evaluated, len(cyclic), sum(1 for _ in iter_cells(changes)),
        )
        return changes

    def _current_config(
        self,
        pos: CellPosition,
        edits: dict[CellPosition, CellConfig],
        previous: dict[CellPosition, CellConfig | None],
        accessor: CellAccessor,
    ) -> CellConfig | None:
        if pos in edits:
            return edits[pos]
        if pos not in previous:
            previous[pos] = self.parser.get_cell_config(pos, accessor)
        return previous[pos]

    async def _recompute(
        self,
        pos: CellPosition,
        edits: dict[CellPosition, CellConfig],
        previous: dict[CellPosition, CellConfig | None],
        accessor: CellAccessor,
        changes: CellsBySheet,
        report_all: bool,
    ) -> bool:
        """Evaluate one ready cell. Returns False when there was nothing to run."""
        config = self._current_config(pos, edits, previous, accessor)
        if config is None or not config.is_formula:
            return False
        parsed = await self.parser.evaluate(config.text, pos, accessor)
        self._publish(pos, parsed, edits, previous, accessor, changes, report_all)
        return True

    def _publish(
        self,
        pos: CellPosition,
        parsed: ParseResult,
        edits: dict[CellPosition, CellConfig],
        previous: dict[CellPosition, CellConfig | None],
        accessor: CellAccessor,
        changes: CellsBySheet,
        report_all: bool,
    ) -> None:
        """Make *parsed* visible to the rest of the pass and record the change."""
        config = self._current_config(pos, edits, previous, accessor)
        if config is None or not config.is_formula:
            return
        updated = config.with_result(parsed)
        self.cache.set_override(pos, updated)
        before = previous.get(pos)
        if (
            report_all
            or pos in edits
            or before is None
            or before.result_fields() != updated.result_fields()
        ):
            set_cell(changes, pos, updated)
