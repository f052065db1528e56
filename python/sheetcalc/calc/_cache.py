"""Per-pass memo of resolved cell and range values."""

from __future__ import annotations

from typing import Any

from sheetcalc.calc._types import CellConfig, CellPosition, CellRange, CellsBySheet, get_cell, set_cell

_MISSING = object()


class ValueCache:
    """Pass-local overrides plus memoized reference values.

    Overrides are cell configs written by the engine for cells already
    recomputed (or edited) in the current pass; they shadow the caller's
    accessor. The memo holds values already resolved from either source so a
    reference is read at most once per pass until the cell is overridden.
    """

    __slots__ = ("_overrides", "_values", "_ranges")

    def __init__(self) -> None:
        self._overrides: CellsBySheet = {}
        self._values: dict[CellPosition, Any] = {}
        self._ranges: dict[CellRange, list[list[Any]]] = {}

    def clear(self) -> None:
        self._overrides = {}
        self._values.clear()
        self._ranges.clear()

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def set_override(self, pos: CellPosition, config: CellConfig) -> None:
        set_cell(self._overrides, pos, config)
        self._values.pop(pos, None)
        stale = [rng for rng in self._ranges if rng.contains(pos)]
        for rng in stale:
            del self._ranges[rng]

    def get_override(self, pos: CellPosition) -> CellConfig | None:
        return get_cell(self._overrides, pos)

    def has_override(self, pos: CellPosition) -> bool:
        return get_cell(self._overrides, pos) is not None

    @property
    def overrides(self) -> CellsBySheet:
        return self._overrides

    # ------------------------------------------------------------------
    # Memo
    # ------------------------------------------------------------------

    def get_value(self, pos: CellPosition, default: Any = _MISSING) -> Any:
        return self._values.get(pos, default)

    def has_value(self, pos: CellPosition) -> bool:
        return pos in self._values

    def put_value(self, pos: CellPosition, value: Any) -> None:
        self._values[pos] = value

    def get_range(self, rng: CellRange) -> list[list[Any]] | None:
        return self._ranges.get(rng)

    def put_range(self, rng: CellRange, values: list[list[Any]]) -> None:
        self._ranges[rng] = values

    def __len__(self) -> int:
        return len(self._values) + len(self._ranges)

    def __repr__(self) -> str:
        return f"ValueCache(values={len(self._values)}, ranges={len(self._ranges)})"
