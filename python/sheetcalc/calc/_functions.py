"""Builtin formula functions and the registry the evaluator dispatches through."""

from __future__ import annotations

import datetime
import fnmatch
import math
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from sheetcalc.calc._errors import ExcelError, FormulaError, is_error
from sheetcalc.calc._types import RichValue

# Lazy functions receive raw argument strings plus an async evaluator for them.
ArgEvaluator = Callable[[str], Awaitable[Any]]


def lazy(func: Callable[..., Any]) -> Callable[..., Any]:
    """Mark *func* as taking ``(raw_args, evaluate)`` instead of resolved values."""
    func._raw_args = True  # type: ignore[attr-defined]
    return func


# ---------------------------------------------------------------------------
# RangeValue: shape-aware 2D range container
# ---------------------------------------------------------------------------


@dataclass
class RangeValue:
    """A resolved cell range that preserves its 2D shape.

    Iterates row-major over the flattened values, so functions that expect
    plain lists keep working.
    """

    rows: list[list[Any]]

    @property
    def n_rows(self) -> int:
        return len(self.rows)

    @property
    def n_cols(self) -> int:
        return len(self.rows[0]) if self.rows else 0

    @property
    def values(self) -> list[Any]:
        return [v for row in self.rows for v in row]

    def get(self, row: int, col: int) -> Any:
        """Value at 1-based (row, col), None outside the range."""
        if row < 1 or row > self.n_rows or col < 1 or col > self.n_cols:
            return None
        return self.rows[row - 1][col - 1]

    def column(self, col: int) -> list[Any]:
        if col < 1 or col > self.n_cols:
            return []
        return [row[col - 1] for row in self.rows]

    def __iter__(self):
        return iter(self.values)

    def __len__(self) -> int:
        return self.n_rows * self.n_cols


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _flatten(values: list[Any]) -> list[Any]:
    out: list[Any] = []
    for v in values:
        if isinstance(v, (RangeValue, list, tuple)):
            out.extend(_flatten(list(v)))
        else:
            out.append(v)
    return out


def _coerce_numeric(values: list[Any]) -> list[float]:
    """Flatten and coerce values to floats, skipping None, text and errors.

    Booleans count as 1/0. Error values inside ranges are skipped; direct
    scalar errors are handled by callers.
    """
    result: list[float] = []
    for v in _flatten(values):
        if isinstance(v, ExcelError) or v is None or isinstance(v, str):
            continue
        if isinstance(v, (bool, int, float)):
            result.append(float(v))
    return result


def to_number(value: Any) -> float:
    """Coerce a single scalar argument to a number or raise ``#VALUE!``."""
    if isinstance(value, ExcelError):
        raise FormulaError(value)
    if value is None:
        return 0.0
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip() or 0)
        except ValueError:
            raise FormulaError(ExcelError.VALUE, f"Expected a number, got {value!r}") from None
    raise FormulaError(ExcelError.VALUE, f"Expected a number, got {type(value).__name__}")


def to_bool(value: Any) -> bool:
    """Spreadsheet truthiness: 0, FALSE, empty and "FALSE" are false."""
    if isinstance(value, ExcelError):
        raise FormulaError(value)
    if isinstance(value, str):
        upper = value.strip().upper()
        if upper in ("TRUE", "FALSE"):
            return upper == "TRUE"
        if not upper:
            return False
        return to_number(value) != 0
    if isinstance(value, (int, float)):
        return value != 0
    return bool(value)


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _arity(name: str, args: list[Any], low: int, high: int | None = None) -> None:
    high = low if high is None else high
    if not low <= len(args) <= high:
        if low == high:
            expected = f"exactly {low}"
        else:
            expected = f"{low} to {high}"
        raise FormulaError(
            ExcelError.ERROR,
            f"Wrong number of arguments to {name}. Expected {expected}, received {len(args)}",
        )


# ---------------------------------------------------------------------------
# Math
# ---------------------------------------------------------------------------


def _builtin_sum(args: list[Any]) -> float:
    return math.fsum(_coerce_numeric(args))


def _builtin_product(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    return math.prod(nums) if nums else 0.0


def _builtin_abs(args: list[Any]) -> float:
    _arity("ABS", args, 1)
    return abs(to_number(args[0]))


def _builtin_round(args: list[Any]) -> float:
    _arity("ROUND", args, 1, 2)
    value = to_number(args[0])
    digits = int(to_number(args[1])) if len(args) > 1 else 0
    # Half away from zero, unlike Python's banker's rounding.
    factor = 10.0**digits
    return math.copysign(math.floor(abs(value) * factor + 0.5) / factor, value)


def _builtin_roundup(args: list[Any]) -> float:
    _arity("ROUNDUP", args, 1, 2)
    value = to_number(args[0])
    factor = 10.0 ** (int(to_number(args[1])) if len(args) > 1 else 0)
    return math.copysign(math.ceil(abs(value) * factor) / factor, value)


def _builtin_rounddown(args: list[Any]) -> float:
    _arity("ROUNDDOWN", args, 1, 2)
    value = to_number(args[0])
    factor = 10.0 ** (int(to_number(args[1])) if len(args) > 1 else 0)
    return math.trunc(value * factor) / factor


def _builtin_int(args: list[Any]) -> float:
    _arity("INT", args, 1)
    return float(math.floor(to_number(args[0])))


def _builtin_mod(args: list[Any]) -> float | ExcelError:
    _arity("MOD", args, 2)
    number, divisor = to_number(args[0]), to_number(args[1])
    if divisor == 0:
        return ExcelError.DIV0
    # Result takes the sign of the divisor.
    return number - divisor * math.floor(number / divisor)


def _builtin_power(args: list[Any]) -> float | ExcelError:
    _arity("POWER", args, 2)
    base, exponent = to_number(args[0]), to_number(args[1])
    if base < 0 and not exponent.is_integer():
        return ExcelError.NUM
    if base == 0 and exponent < 0:
        return ExcelError.DIV0
    return base**exponent


def _builtin_sqrt(args: list[Any]) -> float | ExcelError:
    _arity("SQRT", args, 1)
    value = to_number(args[0])
    if value < 0:
        return ExcelError.NUM
    return math.sqrt(value)


# ---------------------------------------------------------------------------
# Logic
# ---------------------------------------------------------------------------


@lazy
async def _builtin_if(raw_args: list[str], evaluate: ArgEvaluator) -> Any:
    _arity("IF", raw_args, 2, 3)
    if to_bool(await evaluate(raw_args[0])):
        return await evaluate(raw_args[1])
    if len(raw_args) > 2:
        return await evaluate(raw_args[2])
    return False


@lazy
async def _builtin_iferror(raw_args: list[str], evaluate: ArgEvaluator) -> Any:
    _arity("IFERROR", raw_args, 1, 2)
    try:
        value = await evaluate(raw_args[0])
    except FormulaError:
        value = ExcelError.ERROR
    if is_error(value):
        return await evaluate(raw_args[1]) if len(raw_args) > 1 else None
    return value


def _builtin_and(args: list[Any]) -> bool:
    _arity("AND", args, 1, 255)
    return all(to_bool(v) for v in _flatten(args) if v is not None)


def _builtin_or(args: list[Any]) -> bool:
    _arity("OR", args, 1, 255)
    return any(to_bool(v) for v in _flatten(args) if v is not None)


def _builtin_not(args: list[Any]) -> bool:
    _arity("NOT", args, 1)
    return not to_bool(args[0])


def _builtin_isblank(args: list[Any]) -> bool:
    _arity("ISBLANK", args, 1)
    return args[0] is None


@lazy
async def _builtin_iserror(raw_args: list[str], evaluate: ArgEvaluator) -> bool:
    _arity("ISERROR", raw_args, 1)
    try:
        return is_error(await evaluate(raw_args[0]))
    except FormulaError:
        return True


# ---------------------------------------------------------------------------
# Statistical
# ---------------------------------------------------------------------------


def _builtin_count(args: list[Any]) -> float:
    """Counts numeric values only."""
    return float(sum(1 for v in _flatten(args) if isinstance(v, (int, float)) and not isinstance(v, bool)))


def _builtin_counta(args: list[Any]) -> float:
    """Counts non-empty values."""
    return float(sum(1 for v in _flatten(args) if v is not None and v != ""))


def _builtin_min(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    return min(nums) if nums else 0.0


def _builtin_max(args: list[Any]) -> float:
    nums = _coerce_numeric(args)
    return max(nums) if nums else 0.0


def _builtin_average(args: list[Any]) -> float | ExcelError:
    nums = _coerce_numeric(args)
    if not nums:
        return ExcelError.DIV0
    return math.fsum(nums) / len(nums)


_CRITERIA_OP_RE = re.compile(r"^(>=|<=|<>|>|<|=)(.*)$")


def _parse_criteria(criteria: Any) -> Callable[[Any], bool]:
    """Turn a SUMIF/COUNTIF criteria value into a predicate.

    Supports plain values (case-insensitive for text), operator prefixes such
    as ``">100"`` or ``"<>0"``, and ``*``/``?`` wildcards.
    """
    if not isinstance(criteria, str):
        return lambda v: v is not None and not isinstance(v, str) and v == criteria

    m = _CRITERIA_OP_RE.match(criteria)
    op, operand = (m.group(1), m.group(2)) if m else ("=", criteria)
    try:
        number: float | None = float(operand)
    except ValueError:
        number = None

    def predicate(value: Any) -> bool:
        if number is not None and isinstance(value, (int, float)) and not isinstance(value, bool):
            left, right = float(value), number
        elif op in ("=", "<>"):
            matched = fnmatch.fnmatchcase(to_text(value).lower(), operand.lower())
            return matched if op == "=" else not matched
        else:
            left, right = to_text(value).lower(), operand.lower()
        return {
            "=": left == right,
            "<>": left != right,
            ">": left > right,
            "<": left < right,
            ">=": left >= right,
            "<=": left <= right,
        }[op]

    return predicate


def _builtin_sumif(args: list[Any]) -> float:
    """SUMIF(criteria_range, criteria, [sum_range])."""
    _arity("SUMIF", args, 2, 3)
    crit_vals = _flatten([args[0]])
    sum_vals = _flatten([args[2]]) if len(args) > 2 else crit_vals
    predicate = _parse_criteria(args[1])
    total = 0.0
    for i, cv in enumerate(crit_vals):
        if predicate(cv) and i < len(sum_vals):
            sv = sum_vals[i]
            if isinstance(sv, (int, float)) and not isinstance(sv, bool):
                total += float(sv)
    return total


def _builtin_countif(args: list[Any]) -> float:
    """COUNTIF(range, criteria)."""
    _arity("COUNTIF", args, 2)
    predicate = _parse_criteria(args[1])
    return float(sum(1 for v in _flatten([args[0]]) if predicate(v)))


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def _builtin_index(args: list[Any]) -> Any:
    """INDEX(range, row_num, [col_num])."""
    _arity("INDEX", args, 2, 3)
    array = args[0]
    if not isinstance(array, RangeValue):
        array = RangeValue([[array]])
    row_num = int(to_number(args[1]))
    col_num = int(to_number(args[2])) if len(args) > 2 else 1
    # A single row indexed by one number selects a column.
    if len(args) == 2 and array.n_rows == 1:
        row_num, col_num = 1, row_num
    if not (1 <= row_num <= array.n_rows and 1 <= col_num <= array.n_cols):
        return ExcelError.REF
    return array.get(row_num, col_num)


def _builtin_match(args: list[Any]) -> Any:
    """MATCH(lookup_value, lookup_range, [match_type]); exact match only for 0."""
    _arity("MATCH", args, 2, 3)
    lookup = args[0]
    values = _flatten([args[1]])
    match_type = int(to_number(args[2])) if len(args) > 2 else 1
    if match_type == 0:
        predicate = _parse_criteria(lookup)
        for i, v in enumerate(values):
            if predicate(v):
                return float(i + 1)
        return ExcelError.NA
    target = to_number(lookup)
    best = None
    for i, v in enumerate(values):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            if (match_type > 0 and v <= target) or (match_type < 0 and v >= target):
                best = i + 1
    return float(best) if best is not None else ExcelError.NA


def _builtin_vlookup(args: list[Any]) -> Any:
    """VLOOKUP(value, range, col_index, [approximate])."""
    _arity("VLOOKUP", args, 3, 4)
    table = args[1]
    if not isinstance(table, RangeValue):
        return ExcelError.NA
    col = int(to_number(args[2]))
    if col < 1 or col > table.n_cols:
        return ExcelError.REF
    approximate = to_bool(args[3]) if len(args) > 3 else True
    first = table.column(1)
    if not approximate:
        predicate = _parse_criteria(args[0])
        for i, v in enumerate(first):
            if predicate(v):
                return table.get(i + 1, col)
        return ExcelError.NA
    target = to_number(args[0])
    best = None
    for i, v in enumerate(first):
        if isinstance(v, (int, float)) and not isinstance(v, bool) and v <= target:
            best = i + 1
    return table.get(best, col) if best is not None else ExcelError.NA


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def _builtin_left(args: list[Any]) -> str | ExcelError:
    _arity("LEFT", args, 1, 2)
    n = int(to_number(args[1])) if len(args) > 1 else 1
    if n < 0:
        return ExcelError.VALUE
    return to_text(args[0])[:n]


def _builtin_right(args: list[Any]) -> str | ExcelError:
    _arity("RIGHT", args, 1, 2)
    n = int(to_number(args[1])) if len(args) > 1 else 1
    if n < 0:
        return ExcelError.VALUE
    text = to_text(args[0])
    return text[len(text) - n :] if n else ""


def _builtin_mid(args: list[Any]) -> str | ExcelError:
    _arity("MID", args, 3)
    start, n = int(to_number(args[1])), int(to_number(args[2]))
    if start < 1 or n < 0:
        return ExcelError.VALUE
    return to_text(args[0])[start - 1 : start - 1 + n]


def _builtin_len(args: list[Any]) -> float:
    _arity("LEN", args, 1)
    return float(len(to_text(args[0])))


def _builtin_concatenate(args: list[Any]) -> str:
    return "".join(to_text(v) for v in _flatten(args))


def _builtin_upper(args: list[Any]) -> str:
    _arity("UPPER", args, 1)
    return to_text(args[0]).upper()


def _builtin_lower(args: list[Any]) -> str:
    _arity("LOWER", args, 1)
    return to_text(args[0]).lower()


def _builtin_trim(args: list[Any]) -> str:
    _arity("TRIM", args, 1)
    return " ".join(to_text(args[0]).split())


def _builtin_hyperlink(args: list[Any]) -> RichValue:
    """HYPERLINK(url, [title])."""
    _arity("HYPERLINK", args, 1, 2)
    url = to_text(args[0])
    title = to_text(args[1]) if len(args) > 1 and args[1] is not None else None
    return RichValue(hyperlink=url, title=title or None)


# ---------------------------------------------------------------------------
# Date
# ---------------------------------------------------------------------------


def _builtin_today(args: list[Any]) -> datetime.date:
    _arity("TODAY", args, 0)
    return datetime.date.today()


def _builtin_now(args: list[Any]) -> datetime.datetime:
    _arity("NOW", args, 0)
    return datetime.datetime.now()


def _builtin_date(args: list[Any]) -> datetime.date | ExcelError:
    """DATE(year, month, day); month overflow rolls into the next year."""
    _arity("DATE", args, 3)
    year, month, day = (int(to_number(a)) for a in args)
    if 0 <= year <= 1899:
        year += 1900
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    try:
        return datetime.date(year, month, 1) + datetime.timedelta(days=day - 1)
    except (ValueError, OverflowError):
        return ExcelError.NUM


def _as_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise FormulaError(ExcelError.VALUE, f"Expected a date, got {value!r}")


def _builtin_year(args: list[Any]) -> float:
    _arity("YEAR", args, 1)
    return float(_as_date(args[0]).year)


def _builtin_month(args: list[Any]) -> float:
    _arity("MONTH", args, 1)
    return float(_as_date(args[0]).month)


def _builtin_day(args: list[Any]) -> float:
    _arity("DAY", args, 1)
    return float(_as_date(args[0]).day)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_BUILTINS: dict[str, Callable[..., Any]] = {
    "SUM": _builtin_sum,
    "PRODUCT": _builtin_product,
    "ABS": _builtin_abs,
    "ROUND": _builtin_round,
    "ROUNDUP": _builtin_roundup,
    "ROUNDDOWN": _builtin_rounddown,
    "INT": _builtin_int,
    "MOD": _builtin_mod,
    "POWER": _builtin_power,
    "SQRT": _builtin_sqrt,
    "IF": _builtin_if,
    "IFERROR": _builtin_iferror,
    "AND": _builtin_and,
    "OR": _builtin_or,
    "NOT": _builtin_not,
    "ISBLANK": _builtin_isblank,
    "ISERROR": _builtin_iserror,
    "COUNT": _builtin_count,
    "COUNTA": _builtin_counta,
    "MIN": _builtin_min,
    "MAX": _builtin_max,
    "AVERAGE": _builtin_average,
    "SUMIF": _builtin_sumif,
    "COUNTIF": _builtin_countif,
    "INDEX": _builtin_index,
    "MATCH": _builtin_match,
    "VLOOKUP": _builtin_vlookup,
    "LEFT": _builtin_left,
    "RIGHT": _builtin_right,
    "MID": _builtin_mid,
    "LEN": _builtin_len,
    "CONCATENATE": _builtin_concatenate,
    "CONCAT": _builtin_concatenate,
    "UPPER": _builtin_upper,
    "LOWER": _builtin_lower,
    "TRIM": _builtin_trim,
    "HYPERLINK": _builtin_hyperlink,
    "TODAY": _builtin_today,
    "NOW": _builtin_now,
    "DATE": _builtin_date,
    "YEAR": _builtin_year,
    "MONTH": _builtin_month,
    "DAY": _builtin_day,
}


class FunctionRegistry:
    """Registry of callable function implementations.

    Starts with the builtins; *functions* are merged on top and may override
    them. Names are case-insensitive. Implementations take a list of resolved
    arguments and may be coroutine functions.
    """

    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self._functions: dict[str, Callable[..., Any]] = dict(_BUILTINS)
        for name, func in (functions or {}).items():
            self.register(name, func)

    def register(self, name: str, func: Callable[..., Any]) -> None:
        self._functions[name.upper()] = func

    def get(self, name: str) -> Callable[..., Any] | None:
        return self._functions.get(name.upper())

    def has(self, name: str) -> bool:
        return name.upper() in self._functions

    @property
    def supported_functions(self) -> list[str]:
        return sorted(self._functions)
