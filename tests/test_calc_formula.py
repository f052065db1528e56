"""Tests for FormulaParser evaluation and result normalization."""

from __future__ import annotations

import json
from typing import Any

import pytest
from sheetcalc._utils import a1_to_rowcol
from sheetcalc.calc._errors import CellAccessError, ExcelError
from sheetcalc.calc._formula import FormulaParser, cell_value, decode_value, normalize
from sheetcalc.calc._functions import RangeValue
from sheetcalc.calc._types import (
    CellConfig,
    CellPosition,
    CellsBySheet,
    ErrorValue,
    Matrix,
    ParseResult,
    RichValue,
    Scalar,
    get_cell,
    set_cell,
)

HERE = CellPosition("Sheet1", 5, 5)


def _store(**cells: str) -> CellsBySheet:
    """Sheet1 store from keyword A1 refs, e.g. ``_store(A1="5")``."""
    store: CellsBySheet = {}
    for ref, text in cells.items():
        row, col = a1_to_rowcol(ref)
        set_cell(store, CellPosition("Sheet1", row, col), CellConfig.from_text(text))
    return store


def _accessor(store: CellsBySheet):  # type: ignore[no-untyped-def]
    def access(sheet: str, pos: CellPosition) -> CellConfig | None:
        return get_cell(store, pos)

    return access


def _parser(**kwargs: Any) -> FormulaParser:
    kwargs.setdefault("use_formulas", False)
    return FormulaParser(**kwargs)


class TestCellValue:
    def test_empty(self) -> None:
        assert cell_value(None) is None
        assert cell_value(CellConfig()) is None

    def test_number_literal(self) -> None:
        assert cell_value(CellConfig.from_text("42")) == 42.0

    def test_unparsable_number_defaults_to_zero(self) -> None:
        assert cell_value(CellConfig(text="n/a", datatype="number")) == 0.0

    def test_string_literal(self) -> None:
        assert cell_value(CellConfig.from_text("hello")) == "hello"

    def test_boolean_literal_passed_as_text(self) -> None:
        assert cell_value(CellConfig.from_text("TRUE")) == "TRUE"

    def test_formula_result(self) -> None:
        config = CellConfig(text="=1+2", datatype="formula", result="3", result_type="number")
        assert cell_value(config) == 3.0

    def test_formula_string_result(self) -> None:
        config = CellConfig(text='="x"', datatype="formula", result="x", result_type="string")
        assert cell_value(config) == "x"

    def test_formula_error(self) -> None:
        config = CellConfig(text="=1/0", datatype="formula", result_type="error", error="#DIV/0!")
        assert cell_value(config) is ExcelError.DIV0

    def test_matrix_result_reads_top_left(self) -> None:
        config = CellConfig(text="=M()", datatype="formula", result=[[7, 8], [9, 10]], result_type="number")
        assert cell_value(config) == 7.0


class TestCellConfigWire:
    def test_round_trip(self) -> None:
        config = CellConfig(
            text='=HYPERLINK("https://x.example")', datatype="formula",
            result="https://x.example", result_type="hyperlink",
            hyperlink="https://x.example", color="#1155CC", underline=True,
        )
        data = config.to_dict()
        assert data["resultType"] == "hyperlink"
        assert "error" not in data
        assert CellConfig.from_dict(data) == config

    def test_missing_datatype_is_null(self) -> None:
        assert CellConfig.from_dict({}) == CellConfig()

    def test_unknown_datatype_rejected(self) -> None:
        with pytest.raises(ValueError, match="datatype"):
            CellConfig.from_dict({"text": "x", "datatype": "blob"})

    def test_from_content(self) -> None:
        config = CellConfig.from_text("5")
        assert CellConfig.from_content(config) is config
        assert CellConfig.from_content({"text": "=1+1", "datatype": "formula"}).is_formula
        assert CellConfig.from_content("abc") == CellConfig(text="abc", datatype="string")


class TestNormalize:
    def test_number(self) -> None:
        assert normalize(6.0) == ParseResult(result=6.0, result_type="number")

    def test_string(self) -> None:
        assert normalize("abc") == ParseResult(result="abc", result_type="string")

    def test_boolean(self) -> None:
        assert normalize(True).result_type == "boolean"

    def test_null(self) -> None:
        assert normalize(None).result_type == "null"

    def test_error_value(self) -> None:
        out = normalize(ExcelError.NA)
        assert out.error == "#N/A"
        assert out.result_type == "error"
        assert out.result is None

    def test_hyperlink(self) -> None:
        out = normalize(RichValue("https://example.com", "Example"))
        assert out.result == "Example"
        assert out.hyperlink == "https://example.com"
        assert out.color == "#1155CC"
        assert out.underline is True
        assert out.result_type == "hyperlink"

    def test_hyperlink_mapping(self) -> None:
        out = normalize({"datatype": "hyperlink", "hyperlink": "https://a.example"})
        assert out.result == "https://a.example"
        assert out.result_type == "hyperlink"

    def test_json_text_unpacked(self) -> None:
        payload = json.dumps({"datatype": "hyperlink", "hyperlink": "https://b.example", "title": "B"})
        out = normalize(payload)
        assert out.result == "B"
        assert out.hyperlink == "https://b.example"

    def test_non_json_text_kept(self) -> None:
        assert normalize("{not json").result == "{not json"

    def test_json_object_text_stays_string(self) -> None:
        out = normalize('{"a":1}')
        assert out == ParseResult(result='{"a":1}', result_type="string")

    def test_json_array_text_stays_string(self) -> None:
        assert normalize("[1, 2]") == ParseResult(result="[1, 2]", result_type="string")

    def test_matrix(self) -> None:
        out = normalize([[1.0, 2.0], [3.0, 4.0]])
        assert out.result == [[1.0, 2.0], [3.0, 4.0]]
        assert out.result_type == "number"

    def test_range_value(self) -> None:
        out = normalize(RangeValue([["a", "b"]]))
        assert out.result == [["a", "b"]]
        assert out.result_type == "string"

    def test_nan(self) -> None:
        assert normalize(float("nan")).error == "#NUM!"

    def test_decode_variants(self) -> None:
        assert decode_value(1.5) == Scalar(1.5)
        assert decode_value([1, 2]) == Matrix([[1, 2]])
        assert decode_value(ExcelError.REF) == ErrorValue(ExcelError.REF)

    def test_wire_keys(self) -> None:
        assert list(normalize(1.0).to_dict()) == [
            "result", "resultType", "error", "errorMessage", "hyperlink", "color", "underline",
        ]


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_reads_accessor(self) -> None:
        parser = _parser()
        out = await parser.evaluate("=A1+1", HERE, _accessor(_store(A1="5")))
        assert out.result == 6.0
        assert out.result_type == "number"
        assert out.ok

    @pytest.mark.asyncio
    async def test_empty_text(self) -> None:
        out = await _parser().evaluate("", HERE)
        assert out == ParseResult(result_type="null")

    @pytest.mark.asyncio
    async def test_range_row_major(self) -> None:
        captured: list[Any] = []

        def grab(args: list[Any]) -> float:
            captured.append(args[0].rows)
            return 0.0

        parser = _parser(functions={"GRAB": grab})
        await parser.evaluate("=GRAB(A1:B2)", HERE, _accessor(_store(A1="1", B1="2", A2="3")))
        assert captured == [[[1.0, 2.0], [3.0, None]]]

    @pytest.mark.asyncio
    async def test_syntax_error(self) -> None:
        out = await _parser().evaluate("=1+", HERE)
        assert out.error == "#ERROR!"
        assert out.result_type == "error"
        assert out.error_message

    @pytest.mark.asyncio
    async def test_unknown_function(self) -> None:
        out = await _parser().evaluate("=NOPE(1)", HERE)
        assert out.error == "#NAME?"
        assert out.error_message == "Unknown function: NOPE"

    @pytest.mark.asyncio
    async def test_function_exception(self) -> None:
        def boom(args: list[Any]) -> float:
            raise ZeroDivisionError("nope")

        out = await _parser(functions={"BOOM": boom}).evaluate("=BOOM()", HERE)
        assert out.error == "#DIV/0!"

    @pytest.mark.asyncio
    async def test_error_from_referenced_cell(self) -> None:
        store = _store()
        set_cell(store, CellPosition("Sheet1", 1, 1), CellConfig(
            text="=1/0", datatype="formula", result_type="error", error="#DIV/0!",
        ))
        out = await _parser().evaluate("=A1+1", HERE, _accessor(store))
        assert out.error == "#DIV/0!"

    @pytest.mark.asyncio
    async def test_hyperlink_function(self) -> None:
        out = await _parser().evaluate('=HYPERLINK("https://example.com","Example")', HERE)
        assert out.to_dict() == {
            "result": "Example",
            "resultType": "hyperlink",
            "error": None,
            "errorMessage": None,
            "hyperlink": "https://example.com",
            "color": "#1155CC",
            "underline": True,
        }

    @pytest.mark.asyncio
    async def test_custom_function_json_result(self) -> None:
        def link(args: list[Any]) -> str:
            return json.dumps({"datatype": "hyperlink", "hyperlink": "https://c.example", "title": args[0]})

        out = await _parser(functions={"LINK": link}).evaluate('=LINK("C")', HERE)
        assert out.result == "C"
        assert out.hyperlink == "https://c.example"

    @pytest.mark.asyncio
    async def test_json_like_string_literal(self) -> None:
        out = await _parser().evaluate('="{""a"":1}"', HERE)
        assert out.result == '{"a":1}'
        assert out.result_type == "string"
        assert out.error is None

    @pytest.mark.asyncio
    async def test_matrix_result(self) -> None:
        out = await _parser(functions={"GRID": lambda args: [[1, 2], [3, 4]]}).evaluate("=GRID()", HERE)
        assert out.result == [[1, 2], [3, 4]]
        assert out.result_type == "number"

    @pytest.mark.asyncio
    async def test_override_shadows_accessor(self) -> None:
        parser = _parser()
        a1 = CellPosition("Sheet1", 1, 1)
        parser.cache.set_override(a1, CellConfig.from_text("100"))
        out = await parser.evaluate("=A1", HERE, _accessor(_store(A1="5")))
        assert out.result == 100.0

    @pytest.mark.asyncio
    async def test_reference_read_once_per_pass(self) -> None:
        reads: list[CellPosition] = []

        def access(sheet: str, pos: CellPosition) -> CellConfig | None:
            reads.append(pos)
            return CellConfig.from_text("2")

        await _parser().evaluate("=A1*A1+A1", HERE, access)
        assert reads == [CellPosition("Sheet1", 1, 1)]

    @pytest.mark.asyncio
    async def test_accessor_failure_propagates(self) -> None:
        def access(sheet: str, pos: CellPosition) -> CellConfig | None:
            raise OSError("store offline")

        with pytest.raises(CellAccessError, match="store offline"):
            await _parser().evaluate("=A1", HERE, access)

    @pytest.mark.asyncio
    async def test_pluggable_evaluator(self) -> None:
        class Constant:
            async def evaluate(self, text: str, position: CellPosition, on_cell: Any, on_range: Any) -> Any:
                return 42

            def supported_functions(self) -> list[str]:
                return ["ANSWER"]

        parser = _parser(evaluator=Constant())
        out = await parser.evaluate("=ANSWER()", HERE)
        assert out.result == 42
        assert parser.supported_functions() == ["ANSWER"]

    @pytest.mark.asyncio
    async def test_evaluator_crash_becomes_error(self) -> None:
        class Crashing:
            async def evaluate(self, text: str, position: CellPosition, on_cell: Any, on_range: Any) -> Any:
                raise RuntimeError("parser bug")

            def supported_functions(self) -> list[str]:
                return []

        out = await _parser(evaluator=Crashing()).evaluate("=1", HERE)
        assert out.error == "#ERROR!"
        assert out.error_message == "parser bug"

    def test_supported_functions_include_custom(self) -> None:
        names = _parser(functions={"double": lambda args: args[0] * 2}).supported_functions()
        assert "DOUBLE" in names
        assert "SUM" in names
