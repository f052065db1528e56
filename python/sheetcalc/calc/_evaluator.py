"""ExpressionEvaluator: recursive descent evaluator for spreadsheet formulas.

Splits the expression on the lowest-precedence operators at paren depth 0,
folds the operands left to right and recurses into each one, which handles
nesting like ``=ROUND(SUM(A1:A5)*IF(B1>0,1.1,1.0),2)``.
References are resolved through callbacks supplied per call, so the evaluator
holds no cell state of its own. Registered functions may be coroutine
functions; their results are awaited.
"""

from __future__ import annotations

import datetime
import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any

from sheetcalc.calc._errors import CellAccessError, ExcelError, FormulaError, FormulaSyntaxError, first_error
from sheetcalc.calc._functions import FunctionRegistry, RangeValue, to_text
from sheetcalc.calc._parser import parse_reference
from sheetcalc.calc._protocol import CellLookup, RangeLookup
from sheetcalc.calc._types import CellPosition, CellRange

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"^(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_INT_RE = re.compile(r"^\d+$")
_FUNC_HEAD_RE = re.compile(r"^([A-Z_][A-Z0-9_.]*)\s*\(", re.IGNORECASE)
_NAME_RE = re.compile(r"^[A-Z_][A-Z0-9_.]*$", re.IGNORECASE)
_REF_SHAPE_RE = re.compile(r"^(?:'(?:[^']|'')+'!|[A-Za-z0-9_.]+!)?\$?[A-Za-z]{1,3}\$?\d+(?:\s*:\s*\$?[A-Za-z]{1,3}\$?\d+)?$")

# Characters after which +/- is a unary sign, not a binary operator.
_OPERATOR_CHARS = ("(", ",", "+", "-", "*", "/", "^", "&", ">", "<", "=")


# ---------------------------------------------------------------------------
# Expression scanning helpers
# ---------------------------------------------------------------------------


def _scan(expr: str):
    """Yield ``(index, char, depth)`` for chars outside string and sheet quotes.

    Raises FormulaSyntaxError on unbalanced quotes or parentheses.
    """
    depth = 0
    quote: str | None = None
    for i, ch in enumerate(expr):
        if quote is not None:
            if ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise FormulaSyntaxError(f"Unexpected ')' at position {i + 1}")
        yield i, ch, depth
    if quote is not None:
        raise FormulaSyntaxError("Unterminated string literal")
    if depth != 0:
        raise FormulaSyntaxError("Missing closing parenthesis")


def _find_matching_paren(expr: str, start: int) -> int:
    """Index of the ``')'`` matching the ``'('`` at *expr[start]*, or -1."""
    for i, ch, depth in _scan(expr[start:]):
        if ch == ")" and depth == 0:
            return start + i
    return -1


def _match_function_call(expr: str) -> tuple[str, str] | None:
    """If *expr* is exactly ``FUNC(balanced_args)``, return ``(name, args_str)``."""
    m = _FUNC_HEAD_RE.match(expr)
    if not m:
        return None
    open_idx = m.end() - 1
    close_idx = _find_matching_paren(expr, open_idx)
    if close_idx == len(expr) - 1:
        return (m.group(1), expr[open_idx + 1 : close_idx])
    return None


def _top_level_operators(expr: str) -> list[tuple[int, str]]:
    """Binary operators at depth 0 of the lowest precedence present.

    Precedence, lowest first: comparison, ``&``, ``+``/``-``, ``*``/``/``,
    ``^``. Returns ``(start, op)`` pairs left to right; empty when *expr*
    has no top-level binary operator.
    """
    tokens = [(i, ch) for i, ch, depth in _scan(expr) if depth == 0]

    for pass_type in ("cmp", "concat", "add", "mul", "pow"):
        found: list[tuple[int, str]] = []
        for i, ch in reversed(tokens):
            if i == 0:
                continue
            matched_op: str | None = None
            op_start = i
            if pass_type == "cmp":
                pair = expr[i - 1 : i + 1]
                if pair in (">=", "<=", "<>"):
                    matched_op, op_start = pair, i - 1
                elif ch in (">", "<") and expr[i + 1 : i + 2] not in ("=", ">"):
                    matched_op = ch
                elif ch == "=" and expr[i - 1] not in (">", "<"):
                    matched_op = ch
            elif pass_type == "concat" and ch == "&":
                matched_op = ch
            elif pass_type == "add" and ch in ("+", "-"):
                matched_op = ch
            elif pass_type == "mul" and ch in ("*", "/"):
                matched_op = ch
            elif pass_type == "pow" and ch == "^":
                matched_op = ch
            if matched_op is None:
                continue

            j = op_start - 1
            while j >= 0 and expr[j] == " ":
                j -= 1
            if j < 0 or expr[j] in _OPERATOR_CHARS:
                # Unary sign, or an operator with no left operand.
                if pass_type == "add":
                    continue
                raise FormulaSyntaxError(f"Unexpected operator {matched_op!r}")
            # Exponent sign inside a numeric literal such as 2.5e-1.
            if matched_op in ("+", "-") and expr[j] in ("e", "E") and j >= 1 and expr[j - 1].isdigit():
                head = expr[:j].rstrip()
                k = len(head)
                while k > 0 and (head[k - 1].isdigit() or head[k - 1] == "."):
                    k -= 1
                if k == 0 or not (head[k - 1].isalpha() or head[k - 1] in "_$"):
                    continue
            found.append((op_start, matched_op))
        if found:
            found.reverse()
            return found

    return []


def _split_operands(expr: str, ops: list[tuple[int, str]]) -> list[str]:
    """Cut *expr* around *ops*; one more operand than operators."""
    operands: list[str] = []
    prev = 0
    for start, op in ops:
        operands.append(expr[prev:start].strip())
        prev = start + len(op)
    operands.append(expr[prev:].strip())
    for (_, op), operand in zip(ops, operands[1:]):
        if not operand:
            raise FormulaSyntaxError(f"Missing operand after {op!r}")
    return operands


def _split_top_level_args(args_str: str) -> list[str]:
    """Split on commas at depth 0 without evaluating."""
    if not args_str.strip():
        return []
    args: list[str] = []
    start = 0
    for i, ch, depth in _scan(args_str):
        if ch == "," and depth == 0:
            args.append(args_str[start:i].strip())
            start = i + 1
    args.append(args_str[start:].strip())
    return args


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _operand_number(value: Any) -> float | int | ExcelError:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip() or 0)
        except ValueError:
            return ExcelError.VALUE
    return ExcelError.VALUE


def _binary_op(left: Any, op: str, right: Any) -> Any:
    """Evaluate an arithmetic or string binary operation."""
    err = first_error(left, right)
    if err is not None:
        return err
    if isinstance(left, RangeValue) or isinstance(right, RangeValue):
        return ExcelError.VALUE
    if op == "&":
        return to_text(left) + to_text(right)
    # date +/- days
    if isinstance(left, datetime.date) and op in ("+", "-") and isinstance(right, (int, float)):
        delta = datetime.timedelta(days=right)
        return left + delta if op == "+" else left - delta
    if isinstance(left, datetime.date) and isinstance(right, datetime.date) and op == "-":
        return float((left - right).days)
    lnum, rnum = _operand_number(left), _operand_number(right)
    err = first_error(lnum, rnum)
    if err is not None:
        return err
    if op == "+":
        return lnum + rnum
    if op == "-":
        return lnum - rnum
    if op == "*":
        return lnum * rnum
    if op == "/":
        return ExcelError.DIV0 if rnum == 0 else lnum / rnum
    if op == "^":
        if lnum == 0 and rnum < 0:
            return ExcelError.DIV0
        try:
            result = float(lnum) ** float(rnum)
        except (OverflowError, ValueError):
            return ExcelError.NUM
        if isinstance(result, complex):
            return ExcelError.NUM
        return result
    raise FormulaSyntaxError(f"Unknown operator {op!r}")


def _compare(left: Any, right: Any, op: str) -> Any:
    """Evaluate a comparison. Text compares case-insensitively."""
    err = first_error(left, right)
    if err is not None:
        return err
    if left is None:
        left = "" if isinstance(right, str) else 0
    if right is None:
        right = "" if isinstance(left, str) else 0
    lnum = isinstance(left, (int, float))
    rnum = isinstance(right, (int, float))
    if lnum and rnum:
        lv, rv = left, right
    elif lnum != rnum:
        # Numbers sort before text.
        lv, rv = (0, 1) if lnum else (1, 0)
    else:
        lv, rv = to_text(left).lower(), to_text(right).lower()
    if op == "=":
        return lv == rv
    if op == "<>":
        return lv != rv
    if op == ">":
        return lv > rv
    if op == "<":
        return lv < rv
    if op == ">=":
        return lv >= rv
    if op == "<=":
        return lv <= rv
    raise FormulaSyntaxError(f"Unknown operator {op!r}")


def _map_exception(name: str, exc: Exception) -> FormulaError:
    if isinstance(exc, ZeroDivisionError):
        return FormulaError(ExcelError.DIV0, f"{name}: {exc}")
    if isinstance(exc, (ValueError, TypeError)):
        return FormulaError(ExcelError.VALUE, f"{name}: {exc}")
    if isinstance(exc, OverflowError):
        return FormulaError(ExcelError.NUM, f"{name}: {exc}")
    return FormulaError(ExcelError.ERROR, f"{name}: {exc}")


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


@dataclass
class _Context:
    sheet: str
    on_cell: CellLookup
    on_range: RangeLookup


class ExpressionEvaluator:
    """Default evaluator used by :class:`FormulaParser`.

    Usage::

        ev = ExpressionEvaluator(FunctionRegistry())
        value = await ev.evaluate("=SUM(A1:A3)*2", pos, on_cell, on_range)
    """

    def __init__(self, functions: FunctionRegistry | None = None) -> None:
        self.functions = functions if functions is not None else FunctionRegistry()

    def supported_functions(self) -> list[str]:
        return self.functions.supported_functions

    async def evaluate(
        self,
        text: str,
        position: CellPosition,
        on_cell: CellLookup,
        on_range: RangeLookup,
    ) -> Any:
        """Evaluate *text* (with its leading ``=``) in the context of *position*.

        Returns a scalar, a :class:`RangeValue`, an :class:`ExcelError` or
        whatever a registered function produced. Raises FormulaError.
        """
        body = text.strip()
        if body.startswith("="):
            body = body[1:]
        if not body.strip():
            raise FormulaSyntaxError("Empty formula")
        ctx = _Context(position.sheet, on_cell, on_range)
        return await self._eval_expr(body, ctx)

    async def _eval_expr(self, expr: str, ctx: _Context) -> Any:
        """Evaluate one expression (no leading ``=``).

        Dispatch order, first match wins: error literal, binary split,
        parenthesized sub-expression, function call, unary sign, number,
        string, boolean, reference.
        """
        expr = expr.strip()
        if not expr:
            raise FormulaSyntaxError("Missing operand")

        # "#N/A" and "#DIV/0!" contain operator characters.
        error = ExcelError.parse(expr)
        if error is not None:
            return error

        ops = _top_level_operators(expr)
        if ops:
            # Same-precedence chains fold left to right in a loop.
            operands = _split_operands(expr, ops)
            value = await self._eval_expr(operands[0], ctx)
            for (_, op), operand in zip(ops, operands[1:]):
                right_val = await self._eval_expr(operand, ctx)
                if op in ("+", "-", "*", "/", "^", "&"):
                    value = _binary_op(value, op, right_val)
                else:
                    value = _compare(value, right_val, op)
            return value

        if expr.startswith("("):
            close = _find_matching_paren(expr, 0)
            if close == len(expr) - 1:
                return await self._eval_expr(expr[1:close], ctx)
            raise FormulaSyntaxError(f"Unexpected text after ')' in {expr!r}")

        func = _match_function_call(expr)
        if func:
            return await self._eval_function(func[0].upper(), func[1], ctx)

        if expr[0] in ("-", "+"):
            val = await self._eval_expr(expr[1:], ctx)
            if expr[0] == "+":
                return val
            num = _operand_number(val)
            return num if isinstance(num, ExcelError) else -num

        if _NUMBER_RE.match(expr):
            return int(expr) if _INT_RE.match(expr) else float(expr)

        if len(expr) >= 2 and expr[0] == '"' and expr[-1] == '"':
            return expr[1:-1].replace('""', '"')

        upper = expr.upper()
        if upper == "TRUE":
            return True
        if upper == "FALSE":
            return False

        return self._resolve_reference(expr, ctx)

    def _resolve_reference(self, expr: str, ctx: _Context) -> Any:
        ref = parse_reference(expr, ctx.sheet)
        if isinstance(ref, CellPosition):
            return ctx.on_cell(ref)
        if isinstance(ref, CellRange):
            return RangeValue(ctx.on_range(ref))
        if _REF_SHAPE_RE.match(expr):
            raise FormulaError(ExcelError.REF, f"Reference {expr!r} is outside the grid")
        if _NAME_RE.match(expr):
            raise FormulaError(ExcelError.NAME, f"Unknown name: {expr}")
        raise FormulaSyntaxError(f"Could not parse {expr!r}")

    # ------------------------------------------------------------------
    # Function dispatch
    # ------------------------------------------------------------------

    async def _eval_function(self, func_name: str, args_str: str, ctx: _Context) -> Any:
        """Call a registered function.

        Functions marked ``_raw_args`` get the raw argument strings and an
        async evaluator for them, so they can short-circuit (IF, IFERROR).
        """
        func = self.functions.get(func_name)
        if func is None:
            logger.debug("Unsupported function: %s", func_name)
            raise FormulaError(ExcelError.NAME, f"Unknown function: {func_name}")

        raw_args = _split_top_level_args(args_str)
        try:
            if getattr(func, "_raw_args", False):

                async def evaluate_arg(raw: str) -> Any:
                    return await self._resolve_arg(raw, ctx)

                result = func(raw_args, evaluate_arg)
            else:
                args = [await self._resolve_arg(raw, ctx) for raw in raw_args]
                result = func(args)
            if inspect.isawaitable(result):
                result = await result
        except (FormulaError, CellAccessError):
            raise
        except Exception as e:
            logger.debug("Error evaluating %s: %s", func_name, e)
            raise _map_exception(func_name, e) from e
        return result

    async def _resolve_arg(self, arg: str, ctx: _Context) -> Any:
        """Resolve one argument; an empty argument is None."""
        if not arg:
            return None
        return await self._eval_expr(arg, ctx)
