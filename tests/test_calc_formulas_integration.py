"""Tests for the formulas library fallback.

Functions missing from the builtin registry are handed to the ``formulas``
library when it is installed. Skipped otherwise.
"""

from __future__ import annotations

import pytest

import sheetcalc

pytest.importorskip("formulas")


async def _calculated(cells: dict[str, object]) -> sheetcalc.Worksheet:
    wb = sheetcalc.Workbook()
    ws = wb.active
    for ref, value in cells.items():
        ws[ref] = value
    await wb.calculate()
    return ws


# ---------------------------------------------------------------------------
# Constant formulas (no cell refs)
# ---------------------------------------------------------------------------


class TestFormulasConstantFallback:
    @pytest.mark.asyncio
    async def test_pmt(self) -> None:
        """PMT(rate, nper, pv) - monthly mortgage payment."""
        ws = await _calculated({"A1": "=PMT(0.05/12,360,200000)"})
        val = ws.value("A1")
        assert val is not None, "PMT formula returned None - formulas lib not available?"
        assert abs(val - (-1073.6432460242797)) < 0.01

    @pytest.mark.asyncio
    async def test_sln(self) -> None:
        """SLN(cost, salvage, life) - straight-line depreciation."""
        ws = await _calculated({"A1": "=SLN(30000,7500,10)"})
        assert ws.value("A1") == 2250.0


# ---------------------------------------------------------------------------
# Cell ref formulas
# ---------------------------------------------------------------------------


class TestFormulasCellRefFallback:
    @pytest.mark.asyncio
    async def test_sln_with_refs(self) -> None:
        ws = await _calculated({"A1": 30000, "A2": 7500, "A3": 10, "B1": "=SLN(A1,A2,A3)"})
        assert ws.value("B1") == 2250.0

    @pytest.mark.asyncio
    async def test_npv(self) -> None:
        """NPV with cell range reference."""
        ws = await _calculated({
            "A1": -10000, "A2": 3000, "A3": 4000, "A4": 5000, "A5": 6000,
            "B1": "=NPV(0.1,A1:A5)",
        })
        val = ws.value("B1")
        assert val is not None, "NPV returned None - formulas lib not available?"
        # NPV at 10% discount: ~3534.28
        assert abs(val - 3534.28) < 1.0


class TestFormulasFallbackPerturbation:
    @pytest.mark.asyncio
    async def test_pmt_perturbation(self) -> None:
        """Changing the loan amount should change the PMT result."""
        wb = sheetcalc.Workbook()
        ws = wb.active
        ws["A1"] = 200000
        ws["B1"] = "=PMT(0.05/12,360,A1)"
        await wb.calculate()
        before = ws.value("B1")
        await wb.recalculate({"Sheet!A1": 100000})
        after = ws.value("B1")
        assert abs(after - before / 2) < 0.01


class TestFallbackDisabled:
    @pytest.mark.asyncio
    async def test_use_formulas_false(self) -> None:
        engine = sheetcalc.RecalculationEngine(use_formulas=False)
        wb = sheetcalc.Workbook(engine=engine)
        wb.active["A1"] = "=SLN(30000,7500,10)"
        await wb.calculate()
        assert wb.active.value("A1") == "#NAME?"
