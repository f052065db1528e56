"""Error values and exceptions raised while evaluating formulas."""

from __future__ import annotations

from typing import Any


class ExcelError:
    """Spreadsheet error value that propagates through formula chains.

    Use ``ExcelError.of(code)`` to get a cached singleton for each error code.
    Errors compare equal to their string code, so ``ExcelError.NA == "#N/A"``.
    """

    __slots__ = ("code",)
    _cache: dict[str, ExcelError] = {}

    NA: ExcelError
    VALUE: ExcelError
    REF: ExcelError
    DIV0: ExcelError
    NUM: ExcelError
    NAME: ExcelError
    ERROR: ExcelError

    def __init__(self, code: str) -> None:
        self.code = code

    @classmethod
    def of(cls, code: str) -> ExcelError:
        canon = code.upper()
        if canon not in cls._cache:
            cls._cache[canon] = cls(canon)
        return cls._cache[canon]

    @classmethod
    def parse(cls, text: Any) -> ExcelError | None:
        """Return the cached error for a known code string, else None."""
        if isinstance(text, str) and text.upper() in cls._cache:
            return cls._cache[text.upper()]
        return None

    def __repr__(self) -> str:
        return self.code

    def __str__(self) -> str:
        return self.code

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ExcelError):
            return self.code == other.code
        if isinstance(other, str):
            return self.code == other.upper()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.code)


ExcelError.NA = ExcelError.of("#N/A")
ExcelError.VALUE = ExcelError.of("#VALUE!")
ExcelError.REF = ExcelError.of("#REF!")
ExcelError.DIV0 = ExcelError.of("#DIV/0!")
ExcelError.NUM = ExcelError.of("#NUM!")
ExcelError.NAME = ExcelError.of("#NAME?")
# Parse failures, same code Google Sheets shows for them.
ExcelError.ERROR = ExcelError.of("#ERROR!")

CIRCULAR_REFERENCE_MESSAGE = "Circular dependency detected"


def is_error(val: Any) -> bool:
    """Return True if *val* is an ExcelError instance."""
    return isinstance(val, ExcelError)


def first_error(*values: Any) -> ExcelError | None:
    """Return the first ExcelError found in *values*, or None."""
    for v in values:
        if isinstance(v, ExcelError):
            return v
    return None


class FormulaError(Exception):
    """Evaluation failure that ends up stored on the cell as an error value."""

    def __init__(self, error: ExcelError, message: str | None = None) -> None:
        self.error = error
        self.message = message or error.code
        super().__init__(self.message)


class FormulaSyntaxError(FormulaError):
    """Formula text could not be parsed."""

    def __init__(self, message: str) -> None:
        super().__init__(ExcelError.ERROR, message)


class CellAccessError(RuntimeError):
    """The caller-supplied accessor raised while a cell was being read.

    This is the one failure that is allowed to abort a recomputation pass.
    """

    def __init__(self, sheet: str, row: int, col: int, cause: BaseException) -> None:
        self.sheet = sheet
        self.row = row
        self.col = col
        super().__init__(f"Accessor failed reading {sheet}!R{row}C{col}: {cause}")
