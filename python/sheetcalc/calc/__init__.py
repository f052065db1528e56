"""sheetcalc.calc - dependency-driven formula recalculation engine."""

from sheetcalc.calc._cache import ValueCache
from sheetcalc.calc._engine import RecalculationEngine
from sheetcalc.calc._errors import CellAccessError, ExcelError, FormulaError, FormulaSyntaxError
from sheetcalc.calc._evaluator import ExpressionEvaluator
from sheetcalc.calc._formula import FormulaParser, normalize
from sheetcalc.calc._functions import FunctionRegistry, RangeValue, lazy
from sheetcalc.calc._graph import DependencyGraph
from sheetcalc.calc._parser import DependencyExtractor, expand_range, extract_references
from sheetcalc.calc._protocol import CalcEngine, CellAccessor, Evaluator
from sheetcalc.calc._types import (
    CellConfig,
    CellPosition,
    CellRange,
    CellsBySheet,
    ParseResult,
    merge_cells,
)

__all__ = [
    "CalcEngine",
    "CellAccessError",
    "CellAccessor",
    "CellConfig",
    "CellPosition",
    "CellRange",
    "CellsBySheet",
    "DependencyExtractor",
    "DependencyGraph",
    "Evaluator",
    "ExcelError",
    "ExpressionEvaluator",
    "FormulaError",
    "FormulaParser",
    "FormulaSyntaxError",
    "FunctionRegistry",
    "ParseResult",
    "RangeValue",
    "RecalculationEngine",
    "ValueCache",
    "expand_range",
    "extract_references",
    "lazy",
    "merge_cells",
]
