"""sheetcalc: incremental spreadsheet formula recalculation.

Usage::

    from sheetcalc import Workbook

    wb = Workbook()
    ws = wb.active
    ws["A1"] = 10
    ws["A2"] = "=A1*2"
    await wb.calculate()
    await wb.recalculate({"Sheet!A1": 15})
    print(ws.value("A2"))  # 30.0

The engine itself lives in :mod:`sheetcalc.calc` and works against any cell
store through an accessor callable.
"""

from sheetcalc._workbook import Workbook
from sheetcalc._worksheet import Worksheet
from sheetcalc.calc import CellConfig, CellPosition, CellRange, RecalculationEngine

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CellConfig",
    "CellPosition",
    "CellRange",
    "RecalculationEngine",
    "Workbook",
    "Worksheet",
]
