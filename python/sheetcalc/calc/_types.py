"""Cell coordinates, cell state and the per-cell result wire shape."""

from __future__ import annotations

import dataclasses
import datetime
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from sheetcalc._utils import rowcol_to_a1
from sheetcalc.calc._errors import ExcelError

# Datatypes a cell can carry. "error" and "hyperlink" also appear as result types.
DATATYPES = ("number", "string", "date", "boolean", "formula", "hyperlink", "null")

DEFAULT_HYPERLINK_COLOR = "#1155CC"

_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_URL_RE = re.compile(r"^(https?://|mailto:)\S+$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CellPosition:
    """A single sheet-qualified cell, 1-based."""

    sheet: str
    row: int
    col: int

    @property
    def a1(self) -> str:
        return rowcol_to_a1(self.row, self.col)

    @property
    def sort_key(self) -> tuple[str, int, int]:
        """Row-major ordering key, sheets compared by name."""
        return (self.sheet, self.row, self.col)

    def __str__(self) -> str:
        return f"{self.sheet}!{self.a1}"


@dataclass(frozen=True)
class CellRange:
    """A rectangular, inclusive, sheet-qualified range.

    Build with :meth:`of` to get normalized corners (start is top-left).
    """

    sheet: str
    start_row: int
    start_col: int
    end_row: int
    end_col: int

    @classmethod
    def of(cls, sheet: str, row1: int, col1: int, row2: int, col2: int) -> CellRange:
        return cls(
            sheet,
            min(row1, row2),
            min(col1, col2),
            max(row1, row2),
            max(col1, col2),
        )

    @property
    def start(self) -> CellPosition:
        return CellPosition(self.sheet, self.start_row, self.start_col)

    @property
    def end(self) -> CellPosition:
        return CellPosition(self.sheet, self.end_row, self.end_col)

    @property
    def shape(self) -> tuple[int, int]:
        """``(n_rows, n_cols)``."""
        return (self.end_row - self.start_row + 1, self.end_col - self.start_col + 1)

    def contains(self, pos: CellPosition) -> bool:
        return (
            pos.sheet == self.sheet
            and self.start_row <= pos.row <= self.end_row
            and self.start_col <= pos.col <= self.end_col
        )

    def positions(self) -> Iterator[CellPosition]:
        """Yield every cell in row-major order."""
        for row in range(self.start_row, self.end_row + 1):
            for col in range(self.start_col, self.end_col + 1):
                yield CellPosition(self.sheet, row, col)

    def __str__(self) -> str:
        return f"{self.sheet}!{self.start.a1}:{self.end.a1}"


Reference = Union[CellPosition, CellRange]


# ---------------------------------------------------------------------------
# Cell state
# ---------------------------------------------------------------------------


def detect_data_type(value: Any) -> str:
    """Classify a scalar result as number, string, boolean, date or null."""
    if value is None or value == "":
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime.date, datetime.datetime)):
        return "date"
    return "string"


def _infer_datatype(text: str) -> str:
    if text.startswith("="):
        return "formula"
    if _NUMBER_RE.match(text.strip()):
        return "number"
    if text.upper() in ("TRUE", "FALSE"):
        return "boolean"
    if _URL_RE.match(text):
        return "hyperlink"
    try:
        datetime.date.fromisoformat(text)
    except ValueError:
        return "string"
    return "date"


@dataclass
class CellConfig:
    """Persisted state of one cell.

    ``result``, ``result_type`` and ``error`` are only meaningful for
    ``datatype == "formula"``. ``color``/``underline`` are written by
    evaluation when the result is a hyperlink.
    """

    text: str | None = None
    datatype: str = "null"
    result: Any = None
    result_type: str | None = None
    error: str | None = None
    error_message: str | None = None
    hyperlink: str | None = None
    color: str | None = None
    underline: bool | None = None

    @classmethod
    def from_content(cls, value: Any) -> CellConfig:
        """Config for any accepted cell content: a config, its wire mapping or raw input."""
        if isinstance(value, CellConfig):
            return value
        if isinstance(value, Mapping):
            return cls.from_dict(value)
        return cls.from_text(value)

    @classmethod
    def from_text(cls, text: Any) -> CellConfig:
        """Build a config from raw user input, inferring its datatype."""
        if text is None or text == "":
            return cls()
        if isinstance(text, bool):
            return cls(text="TRUE" if text else "FALSE", datatype="boolean")
        if isinstance(text, (int, float)):
            return cls(text=repr(text) if isinstance(text, float) else str(text), datatype="number")
        text = str(text)
        datatype = _infer_datatype(text)
        if datatype == "hyperlink":
            return cls(text=text, datatype=datatype, hyperlink=text)
        return cls(text=text, datatype=datatype)

    @property
    def is_formula(self) -> bool:
        return self.datatype == "formula"

    @property
    def is_empty(self) -> bool:
        return self.datatype == "null" and not self.text

    def with_result(self, parsed: ParseResult) -> CellConfig:
        """Copy of this config carrying *parsed* as its cached result."""
        return dataclasses.replace(
            self,
            result=parsed.result,
            result_type=parsed.result_type,
            error=parsed.error,
            error_message=parsed.error_message,
            hyperlink=parsed.hyperlink,
            color=parsed.color,
            underline=parsed.underline,
        )

    def result_fields(self) -> ParseResult:
        return ParseResult(
            result=self.result,
            result_type=self.result_type,
            error=self.error,
            error_message=self.error_message,
            hyperlink=self.hyperlink,
            color=self.color,
            underline=self.underline,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire form with camelCase keys, unset fields omitted."""
        out: dict[str, Any] = {"text": self.text, "datatype": self.datatype}
        out.update({k: v for k, v in self.result_fields().to_dict().items() if v is not None})
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CellConfig:
        """Inverse of :meth:`to_dict`. Raises ValueError on an unknown datatype."""
        datatype = data.get("datatype") or "null"
        if datatype not in DATATYPES:
            raise ValueError(f"Unknown cell datatype: {datatype!r}")
        return cls(
            text=data.get("text"),
            datatype=datatype,
            result=data.get("result"),
            result_type=data.get("resultType"),
            error=data.get("error"),
            error_message=data.get("errorMessage"),
            hyperlink=data.get("hyperlink"),
            color=data.get("color"),
            underline=data.get("underline"),
        )


@dataclass(frozen=True)
class ParseResult:
    """Outcome of evaluating one formula. Field names on the wire are fixed."""

    result: Any = None
    result_type: str | None = None
    error: str | None = None
    error_message: str | None = None
    hyperlink: str | None = None
    color: str | None = None
    underline: bool | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: ExcelError | str, message: str | None = None) -> ParseResult:
        code = str(error)
        return cls(result_type="error", error=code, error_message=message or code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result,
            "resultType": self.result_type,
            "error": self.error,
            "errorMessage": self.error_message,
            "hyperlink": self.hyperlink,
            "color": self.color,
            "underline": self.underline,
        }


# ---------------------------------------------------------------------------
# Decoded evaluator values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Scalar:
    value: Any


@dataclass(frozen=True)
class Matrix:
    rows: list[list[Any]] = field(default_factory=list)

    @property
    def top_left(self) -> Any:
        if self.rows and self.rows[0]:
            return self.rows[0][0]
        return None


@dataclass(frozen=True)
class ErrorValue:
    error: ExcelError
    message: str | None = None


@dataclass(frozen=True)
class RichValue:
    """Tagged hyperlink value: display ``title`` pointing at ``hyperlink``."""

    hyperlink: str
    title: str | None = None

    @property
    def display(self) -> str:
        return self.title or self.hyperlink


EvaluatedValue = Union[Scalar, Matrix, ErrorValue, RichValue]


# ---------------------------------------------------------------------------
# CellsBySheet: sheet -> row -> col -> CellConfig
# ---------------------------------------------------------------------------

CellsBySheet = dict[str, dict[int, dict[int, CellConfig]]]


def get_cell(cells: Mapping[str, Mapping[int, Mapping[int, CellConfig]]], pos: CellPosition) -> CellConfig | None:
    return cells.get(pos.sheet, {}).get(pos.row, {}).get(pos.col)


def set_cell(cells: CellsBySheet, pos: CellPosition, config: CellConfig) -> None:
    cells.setdefault(pos.sheet, {}).setdefault(pos.row, {})[pos.col] = config


def iter_cells(
    cells: Mapping[str, Mapping[int, Mapping[int, CellConfig]]],
) -> Iterator[tuple[CellPosition, CellConfig]]:
    for sheet, rows in cells.items():
        for row, cols in rows.items():
            for col, config in cols.items():
                yield CellPosition(sheet, int(row), int(col)), config


def merge_cells(target: CellsBySheet, changes: Mapping[str, Mapping[int, Mapping[int, CellConfig]]]) -> CellsBySheet:
    """Merge *changes* into *target* in place and return it."""
    for pos, config in iter_cells(changes):
        set_cell(target, pos, config)
    return target
