"""Dependency graph for formula cells, keyed by sheet-qualified references."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from sheetcalc.calc._types import CellPosition, CellRange, Reference


class DependencyGraph:
    """Tracks which formula cells read which cells and ranges.

    A range reference is stored as one coarse edge: any cell inside the range
    reaches every formula that references the range.
    """

    __slots__ = ("dependencies", "dependents", "range_dependents", "formulas", "_ranges_by_sheet")

    def __init__(self) -> None:
        # formula cell -> references it reads, in formula order
        self.dependencies: dict[CellPosition, tuple[Reference, ...]] = {}
        # cell -> formula cells that read it directly (reverse edges)
        self.dependents: dict[CellPosition, set[CellPosition]] = {}
        # range -> formula cells that read it
        self.range_dependents: dict[CellRange, set[CellPosition]] = {}
        # formula cell -> formula text
        self.formulas: dict[CellPosition, str] = {}
        self._ranges_by_sheet: dict[str, set[CellRange]] = {}

    # ------------------------------------------------------------------
    # Edge maintenance
    # ------------------------------------------------------------------

    def set_formula(self, cell: CellPosition, formula: str, refs: Iterable[Reference]) -> None:
        """Register *cell* as a formula reading *refs*, replacing earlier edges.

        Only the difference between the old and new reference sets is
        touched; duplicate references collapse into one edge.
        """
        new_refs = tuple(dict.fromkeys(refs))
        old_refs = set(self.dependencies.get(cell, ()))
        for ref in old_refs.difference(new_refs):
            self._unlink(ref, cell)
        for ref in new_refs:
            if ref not in old_refs:
                self._link(ref, cell)
        self.dependencies[cell] = new_refs
        self.formulas[cell] = formula

    def remove_formula(self, cell: CellPosition) -> None:
        """Retract every outgoing edge of *cell*; no-op for non-formula cells."""
        for ref in self.dependencies.pop(cell, ()):
            self._unlink(ref, cell)
        self.formulas.pop(cell, None)

    def clear(self) -> None:
        self.dependencies.clear()
        self.dependents.clear()
        self.range_dependents.clear()
        self.formulas.clear()
        self._ranges_by_sheet.clear()

    def _link(self, ref: Reference, cell: CellPosition) -> None:
        if isinstance(ref, CellRange):
            self.range_dependents.setdefault(ref, set()).add(cell)
            self._ranges_by_sheet.setdefault(ref.sheet, set()).add(ref)
        else:
            self.dependents.setdefault(ref, set()).add(cell)

    def _unlink(self, ref: Reference, cell: CellPosition) -> None:
        if isinstance(ref, CellRange):
            readers = self.range_dependents.get(ref)
            if readers is None:
                return
            readers.discard(cell)
            if not readers:
                del self.range_dependents[ref]
                sheet_ranges = self._ranges_by_sheet.get(ref.sheet)
                if sheet_ranges is not None:
                    sheet_ranges.discard(ref)
                    if not sheet_ranges:
                        del self._ranges_by_sheet[ref.sheet]
        else:
            readers = self.dependents.get(ref)
            if readers is None:
                return
            readers.discard(cell)
            if not readers:
                del self.dependents[ref]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def dependents_of(self, cell: CellPosition) -> set[CellPosition]:
        """Formula cells reading *cell* directly or through a range."""
        found = set(self.dependents.get(cell, ()))
        for rng in self._ranges_by_sheet.get(cell.sheet, ()):
            if rng.contains(cell):
                found.update(self.range_dependents[rng])
        return found

    def closure(self, seeds: Iterable[CellPosition]) -> set[CellPosition]:
        """Seeds plus every cell transitively dependent on them (BFS)."""
        visited: set[CellPosition] = set(seeds)
        queue: deque[CellPosition] = deque(visited)
        while queue:
            cell = queue.popleft()
            for dep in self.dependents_of(cell):
                if dep not in visited:
                    visited.add(dep)
                    queue.append(dep)
        return visited

    def subgraph(
        self, cells: set[CellPosition],
    ) -> tuple[dict[CellPosition, set[CellPosition]], dict[CellPosition, int]]:
        """Edges and in-degrees restricted to *cells*.

        Returns ``(edges, in_degree)`` where ``edges[p]`` holds the cells in
        *cells* that read ``p``. Edges from outside *cells* are not counted.
        A self-referencing formula gets an edge to itself.
        """
        edges: dict[CellPosition, set[CellPosition]] = {cell: set() for cell in cells}
        in_degree: dict[CellPosition, int] = dict.fromkeys(cells, 0)
        for cell in cells:
            for dep in self.dependents_of(cell):
                if dep in cells and dep not in edges[cell]:
                    edges[cell].add(dep)
                    in_degree[dep] += 1
        return edges, in_degree

    def __len__(self) -> int:
        return len(self.formulas)

    def __repr__(self) -> str:
        edges = sum(len(v) for v in self.dependents.values())
        edges += sum(len(v) for v in self.range_dependents.values())
        return f"DependencyGraph(formulas={len(self.formulas)}, edges={edges})"
