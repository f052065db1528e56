"""FormulaParser: evaluates one formula and normalizes the outcome.

When the ``formulas`` library is installed (via ``sheetcalc[formulas]``),
formulas using functions missing from the registry fall back to the library's
implementations.
"""

from __future__ import annotations

import inspect
import json
import logging
import math
import re
from collections.abc import Callable, Mapping
from typing import Any

from sheetcalc.calc._cache import ValueCache
from sheetcalc.calc._errors import CellAccessError, ExcelError, FormulaError
from sheetcalc.calc._evaluator import ExpressionEvaluator
from sheetcalc.calc._functions import FunctionRegistry, RangeValue
from sheetcalc.calc._parser import parse_reference
from sheetcalc.calc._protocol import CellAccessor, Evaluator
from sheetcalc.calc._types import (
    DEFAULT_HYPERLINK_COLOR,
    CellConfig,
    CellPosition,
    CellRange,
    ErrorValue,
    EvaluatedValue,
    Matrix,
    ParseResult,
    RichValue,
    Scalar,
    detect_data_type,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# formulas library availability
# ---------------------------------------------------------------------------

_formulas_available: bool | None = None


def _check_formulas() -> bool:
    global _formulas_available
    if _formulas_available is None:
        try:
            import formulas  # noqa: F401

            _formulas_available = True
        except ImportError:
            _formulas_available = False
    return _formulas_available


_WORKBOOK_PREFIX_RE = re.compile(r"\[[^\]]*\]")


# ---------------------------------------------------------------------------
# Value coercion and result decoding
# ---------------------------------------------------------------------------


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return 0.0


def cell_value(config: CellConfig | None) -> Any:
    """The value a formula sees when it references a cell with *config*.

    Formula cells (or any cell carrying a result type) expose their cached
    result, literal cells their text. ``number`` values are parsed as floats,
    defaulting to 0. A cached error propagates as its error value.
    """
    if config is None:
        return None
    if config.is_formula or config.result_type is not None:
        if config.error:
            return ExcelError.parse(config.error) or ExcelError.ERROR
        value = config.result
        if isinstance(value, list):
            # Spilled matrix results are read through their top-left value.
            value = Matrix(value).top_left
        source_type = config.result_type
    else:
        value = config.text
        source_type = config.datatype
    if value == "":
        value = None
    if source_type == "number":
        return _to_float(value)
    return value


def _extract_if_json(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return text
    try:
        return json.loads(stripped)
    except ValueError:
        return text


def _is_hyperlink(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and str(value.get("datatype", "")).lower() == "hyperlink"
        and bool(value.get("hyperlink"))
    )


def decode_value(raw: Any) -> EvaluatedValue:
    """Turn a duck-typed evaluator result into a tagged variant."""
    if isinstance(raw, (Scalar, Matrix, ErrorValue, RichValue)):
        return raw
    if isinstance(raw, ExcelError):
        return ErrorValue(raw)
    if isinstance(raw, RangeValue):
        return Matrix(raw.rows)
    if isinstance(raw, str):
        # Only tagged hyperlink objects are unpacked; other JSON stays text.
        decoded = _extract_if_json(raw)
        if _is_hyperlink(decoded):
            return decode_value(decoded)
        return Scalar(raw)
    if isinstance(raw, Mapping):
        if _is_hyperlink(raw):
            return RichValue(hyperlink=str(raw["hyperlink"]), title=raw.get("title") or None)
        return ErrorValue(ExcelError.VALUE, "Function returned an unsupported object")
    if isinstance(raw, (list, tuple)):
        if all(isinstance(row, (list, tuple)) for row in raw):
            return Matrix([list(row) for row in raw])
        return Matrix([list(raw)])
    if isinstance(raw, float) and (math.isnan(raw) or math.isinf(raw)):
        return ErrorValue(ExcelError.NUM, "Result is not a finite number")
    return Scalar(raw)


def normalize(raw: Any) -> ParseResult:
    """Normalize an evaluator result into the per-cell wire shape."""
    decoded = decode_value(raw)
    if isinstance(decoded, RichValue):
        return ParseResult(
            result=decoded.display,
            result_type="hyperlink",
            hyperlink=decoded.hyperlink,
            color=DEFAULT_HYPERLINK_COLOR,
            underline=True,
        )
    if isinstance(decoded, ErrorValue):
        return ParseResult.failure(decoded.error, decoded.message)
    if isinstance(decoded, Matrix):
        top_left = decode_value(decoded.top_left)
        if isinstance(top_left, ErrorValue):
            return ParseResult.failure(top_left.error, top_left.message)
        return ParseResult(result=decoded.rows, result_type=detect_data_type(decoded.top_left))
    return ParseResult(result=decoded.value, result_type=detect_data_type(decoded.value))


# ---------------------------------------------------------------------------
# FormulaParser
# ---------------------------------------------------------------------------


class FormulaParser:
    """Evaluates formula text against a position and a cell accessor.

    Reference values come from the pass-local :class:`ValueCache` first, then
    from the accessor. :meth:`evaluate` never raises for formula-level
    failures; only a failing accessor escapes, as :class:`CellAccessError`.
    """

    def __init__(
        self,
        functions: Mapping[str, Callable[..., Any]] | FunctionRegistry | None = None,
        evaluator: Evaluator | None = None,
        cache: ValueCache | None = None,
        use_formulas: bool | None = None,
    ) -> None:
        if isinstance(functions, FunctionRegistry):
            self.functions = functions
        else:
            self.functions = FunctionRegistry(functions)
        self.evaluator: Evaluator = evaluator or ExpressionEvaluator(self.functions)
        self.cache = cache if cache is not None else ValueCache()
        if use_formulas is None:
            self._use_formulas = _check_formulas()
        else:
            self._use_formulas = use_formulas and _check_formulas()
        self._compiled_cache: dict[str, Any] = {}

    def supported_functions(self) -> list[str]:
        return self.evaluator.supported_functions()

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def get_cell_config(self, pos: CellPosition, accessor: CellAccessor | None) -> CellConfig | None:
        """Override for *pos* if one exists, else the accessor's config."""
        override = self.cache.get_override(pos)
        if override is not None:
            return override
        if accessor is None:
            return None
        try:
            return accessor(pos.sheet, pos)
        except Exception as exc:
            raise CellAccessError(pos.sheet, pos.row, pos.col, exc) from exc

    def get_cell_value(self, pos: CellPosition, accessor: CellAccessor | None) -> Any:
        if self.cache.has_value(pos):
            return self.cache.get_value(pos)
        value = cell_value(self.get_cell_config(pos, accessor))
        self.cache.put_value(pos, value)
        return value

    def get_range_value(self, rng: CellRange, accessor: CellAccessor | None) -> list[list[Any]]:
        """Row-major 2D list of the values in *rng*."""
        cached = self.cache.get_range(rng)
        if cached is not None:
            return cached
        rows = [
            [self.get_cell_value(CellPosition(rng.sheet, row, col), accessor)
             for col in range(rng.start_col, rng.end_col + 1)]
            for row in range(rng.start_row, rng.end_row + 1)
        ]
        self.cache.put_range(rng, rows)
        return rows

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        text: str | None,
        position: CellPosition,
        accessor: CellAccessor | None = None,
    ) -> ParseResult:
        """Evaluate *text* (leading ``=`` included) as the formula at *position*."""
        if not text:
            return ParseResult(result_type="null")

        def on_cell(pos: CellPosition) -> Any:
            return self.get_cell_value(pos, accessor)

        def on_range(rng: CellRange) -> list[list[Any]]:
            return self.get_range_value(rng, accessor)

        try:
            raw = await self.evaluator.evaluate(text, position, on_cell, on_range)
        except CellAccessError:
            raise
        except FormulaError as exc:
            if exc.error == ExcelError.NAME and self._use_formulas:
                fallback = self._formulas_fallback(text, position, accessor)
                if fallback is not None:
                    return normalize(fallback)
            logger.debug("Formula %r at %s failed: %s", text, position, exc.message)
            return ParseResult.failure(exc.error, exc.message)
        except Exception as exc:
            # Third-party evaluators may raise anything.
            logger.debug("Evaluator raised on %r at %s", text, position, exc_info=True)
            return ParseResult.failure(ExcelError.ERROR, str(exc) or type(exc).__name__)
        return normalize(raw)

    # ------------------------------------------------------------------
    # formulas library fallback
    # ------------------------------------------------------------------

    def _formulas_fallback(self, formula: str, position: CellPosition, accessor: CellAccessor | None) -> Any:
        """Evaluate a formula via the ``formulas`` library.

        Compiles the formula into a callable, resolves its reference
        parameters through the same cache/accessor path, and returns the
        plain Python result, or None when the library cannot handle it.
        """
        import formulas as fm
        import numpy as np

        compiled = self._compiled_cache.get(formula)
        if compiled is None:
            try:
                result = fm.Parser().ast(formula)
                if result and len(result) > 1:
                    compiled = result[1].compile()
                    self._compiled_cache[formula] = compiled
            except Exception:
                logger.debug("formulas: cannot compile %r", formula)
                return None
        if compiled is None:
            return None

        try:
            params = list(inspect.signature(compiled).parameters.keys())
        except (ValueError, TypeError):
            params = []

        args: list[Any] = []
        for param in params:
            ref = parse_reference(_WORKBOOK_PREFIX_RE.sub("", param), position.sheet)
            if isinstance(ref, CellRange):
                rows = self.get_range_value(ref, accessor)
                grid = np.array([[0 if v is None else v for v in row] for row in rows])
                # Single-column ranges go in flat, as the library's own range inputs do.
                args.append(grid.ravel() if grid.shape[1] == 1 else grid)
            elif isinstance(ref, CellPosition):
                val = self.get_cell_value(ref, accessor)
                args.append(np.float64(0) if val is None else val)
            else:
                logger.debug("formulas: unresolvable parameter %r in %r", param, formula)
                return None

        try:
            raw = compiled(*args)
        except Exception as e:
            logger.debug("formulas: error evaluating %r: %s", formula, e)
            return None
        return self._normalize_formulas_result(raw)

    @staticmethod
    def _normalize_formulas_result(raw: Any) -> Any:
        """Convert a ``formulas`` library result to a plain Python value."""
        if raw is None:
            return None
        if hasattr(raw, "shape") and hasattr(raw, "flat"):
            if raw.size == 1:
                raw = raw.flat[0]
            else:
                rows = raw.tolist()
                return [rows] if raw.ndim == 1 else rows
        if hasattr(raw, "item"):
            try:
                raw = raw.item()
            except (ValueError, TypeError):
                pass
        if isinstance(raw, (int, float, str, bool)):
            return raw
        # formulas represents spreadsheet errors with its own XlError type.
        code = ExcelError.parse(str(raw))
        return code if code is not None else str(raw)
