"""Integration tests for sheetcalc: Workbook store driving the engine end to end."""

from __future__ import annotations

from typing import Any

import pytest
from sheetcalc.calc import CellConfig, RecalculationEngine

import sheetcalc

# ---------------------------------------------------------------------------
# Workbook builders
# ---------------------------------------------------------------------------


def _build_sum_chain() -> sheetcalc.Workbook:
    """A1=10, A2=20, A3=SUM(A1:A2), A4=A3*2."""
    wb = sheetcalc.Workbook()
    ws = wb.active
    ws["A1"] = 10
    ws["A2"] = 20
    ws["A3"] = "=SUM(A1:A2)"
    ws["A4"] = "=A3*2"
    return wb


def _build_cross_sheet() -> sheetcalc.Workbook:
    """Sheet holds values, Summary holds formulas over them."""
    wb = sheetcalc.Workbook()
    data = wb.active
    for i, value in enumerate((1000, 2000, 3000, 4000), start=1):
        data[f"A{i}"] = value
    summary = wb.create_sheet("Summary")
    summary["A1"] = "=SUM(Sheet!A1:A4)"
    summary["A2"] = "=AVERAGE(Sheet!A1:A4)"
    summary["A3"] = "=Summary!A1-Summary!A2"
    return wb


class TestWorkbook:
    def test_sheets(self) -> None:
        wb = sheetcalc.Workbook()
        wb.create_sheet("Data")
        assert wb.sheetnames == ["Sheet", "Data"]
        assert "Data" in wb
        assert list(wb) == ["Sheet", "Data"]
        assert wb["Data"].title == "Data"
        assert repr(wb) == "<Workbook sheets=['Sheet', 'Data']>"

    def test_duplicate_sheet(self) -> None:
        wb = sheetcalc.Workbook()
        with pytest.raises(ValueError, match="already exists"):
            wb.create_sheet("Sheet")

    def test_missing_sheet(self) -> None:
        with pytest.raises(KeyError):
            sheetcalc.Workbook()["Nope"]

    def test_cell_assignment_infers_datatype(self) -> None:
        wb = sheetcalc.Workbook()
        ws = wb.active
        ws["A1"] = 10
        ws["B1"] = "hello"
        ws["C1"] = "=A1"
        ws["D1"] = True
        assert ws["A1"].datatype == "number"
        assert ws["B1"].datatype == "string"
        assert ws["C1"].datatype == "formula"
        assert ws["D1"].text == "TRUE"
        assert ws["E1"] is None

    def test_assigning_empty_deletes(self) -> None:
        wb = sheetcalc.Workbook()
        ws = wb.active
        ws["A1"] = 1
        ws["A1"] = None
        assert ws["A1"] is None
        assert wb.cells["Sheet"] == {}

    def test_iter_cells_row_major(self) -> None:
        wb = sheetcalc.Workbook()
        ws = wb.active
        ws["B2"] = 1
        ws["A1"] = 2
        ws["C1"] = 3
        assert [(r, c) for r, c, _ in ws.iter_cells()] == [(1, 1), (1, 3), (2, 2)]

    def test_from_cells(self) -> None:
        wb = sheetcalc.Workbook.from_cells({"Data": {1: {1: "5", 2: CellConfig.from_text("=A1*2")}}})
        assert wb.sheetnames == ["Data"]
        assert wb["Data"]["B1"].is_formula


class TestCalculate:
    @pytest.mark.asyncio
    async def test_sum_chain(self) -> None:
        wb = _build_sum_chain()
        await wb.calculate()
        ws = wb.active
        assert ws.value("A3") == 30.0
        assert ws.value("A4") == 60.0

    @pytest.mark.asyncio
    async def test_cross_sheet(self) -> None:
        wb = _build_cross_sheet()
        await wb.calculate()
        summary = wb["Summary"]
        assert summary.value("A1") == 10000.0
        assert summary.value("A2") == 2500.0
        assert summary.value("A3") == 7500.0

    @pytest.mark.asyncio
    async def test_returns_change_set(self) -> None:
        wb = _build_sum_chain()
        changes = await wb.calculate()
        assert set(changes["Sheet"][3]) == {1}
        assert set(changes["Sheet"][4]) == {1}

    @pytest.mark.asyncio
    async def test_error_display(self) -> None:
        wb = sheetcalc.Workbook()
        wb.active["A1"] = "=1/0"
        await wb.calculate()
        assert wb.active.value("A1") == "#DIV/0!"


class TestRecalculate:
    @pytest.mark.asyncio
    async def test_propagates(self) -> None:
        wb = _build_sum_chain()
        await wb.calculate()
        changes = await wb.recalculate({"Sheet!A1": 15})
        ws = wb.active
        assert ws.value("A3") == 35.0
        assert ws.value("A4") == 70.0
        assert set(changes["Sheet"]) == {1, 3, 4}

    @pytest.mark.asyncio
    async def test_unqualified_ref_uses_first_sheet(self) -> None:
        wb = _build_sum_chain()
        await wb.calculate()
        await wb.recalculate({"A2": 0})
        assert wb.active.value("A4") == 20.0

    @pytest.mark.asyncio
    async def test_cross_sheet_edit(self) -> None:
        wb = _build_cross_sheet()
        await wb.calculate()
        await wb.recalculate({"Sheet!A4": 0})
        assert wb["Summary"].value("A1") == 6000.0
        assert wb["Summary"].value("A3") == 4500.0

    @pytest.mark.asyncio
    async def test_edits_on_two_sheets_recompute_once(self) -> None:
        seen: list[list[Any]] = []

        def total(args: list[Any]) -> float:
            seen.append(args)
            return sum(args)

        wb = sheetcalc.Workbook(engine=RecalculationEngine(functions={"TOTAL": total}))
        wb.active["A1"] = 1
        other = wb.create_sheet("Other")
        other["A1"] = 2
        wb.active["B1"] = "=TOTAL(A1,Other!A1)"
        await wb.calculate()
        seen.clear()

        changes = await wb.recalculate({"Sheet!A1": 10, "Other!A1": 20})
        assert seen == [[10.0, 20.0]]
        assert wb.active.value("B1") == 30.0
        assert changes["Other"][1][1].text == "20"

    @pytest.mark.asyncio
    async def test_clear_cell(self) -> None:
        wb = _build_sum_chain()
        await wb.calculate()
        await wb.recalculate({"Sheet!A2": None})
        assert wb.active["A2"] is None
        assert wb.active.value("A3") == 10.0

    @pytest.mark.asyncio
    async def test_new_formula(self) -> None:
        wb = _build_sum_chain()
        await wb.calculate()
        await wb.recalculate({"Sheet!B1": "=A4/A3"})
        assert wb.active.value("B1") == 2.0

    @pytest.mark.asyncio
    async def test_unknown_sheet(self) -> None:
        wb = _build_sum_chain()
        with pytest.raises(KeyError):
            await wb.recalculate({"Missing!A1": 1})

    @pytest.mark.asyncio
    async def test_shared_engine(self) -> None:
        engine = RecalculationEngine(functions={"TRIPLE": lambda args: args[0] * 3})
        wb = sheetcalc.Workbook(engine=engine)
        wb.active["A1"] = 2
        wb.active["B1"] = "=TRIPLE(A1)"
        await wb.calculate()
        assert wb.engine is engine
        assert wb.active.value("B1") == 6.0

    @pytest.mark.asyncio
    async def test_wire_mapping_content(self) -> None:
        wb = sheetcalc.Workbook()
        wb.active["A1"] = {"text": "4", "datatype": "number"}
        wb.active["B1"] = {"text": "=A1*2", "datatype": "formula"}
        await wb.calculate()
        await wb.recalculate({"Sheet!A1": {"text": "5", "datatype": "number"}})
        assert wb.active.value("B1") == 10.0
        assert wb.active["B1"].to_dict()["resultType"] == "number"
