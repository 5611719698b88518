"""
Test suite for the cell graph

Tests formula parsing, sheet definition (cycles, unknown references),
incremental recomputation, cross-sheet formulas and CELLS_CHANGED publishing.
"""

import threading

import pytest
from decimal import Decimal
from unittest.mock import Mock

from core_reporting.storage import InMemoryStorage
from core_reporting.audit import AuditTrail, AuditEventType
from core_reporting.events import EventDispatcher, DomainEvent
from core_reporting.exceptions import CycleError, SheetDefinitionError, UnknownCellReferenceError
from core_reporting.cells import (
    CellRef, FormulaTerm, CellDefinition, SheetSchema, Workbook, parse_formula
)


def simple_schema(sheet_id="S1"):
    """C = A + B - D"""
    return SheetSchema.from_rows(sheet_id, [
        {"cell_id": "A", "label": "A"},
        {"cell_id": "B", "label": "B"},
        {"cell_id": "D", "label": "D"},
        {"cell_id": "C", "label": "Total", "formula": "A+B-D"},
    ])


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def workbook(dispatcher):
    wb = Workbook(dispatcher=dispatcher)
    wb.define_sheet(simple_schema())
    return wb


class TestCellRef:
    """Test cell reference parsing"""

    def test_parse_qualified(self):
        """Test SHEET.CELL form"""
        ref = CellRef.parse("MSP2_01.C5")
        assert ref == CellRef("MSP2_01", "C5")
        assert str(ref) == "MSP2_01.C5"

    def test_parse_relative_to_default_sheet(self):
        """Test bare cell id resolved against a default sheet"""
        assert CellRef.parse("C5", "MSP2_01") == CellRef("MSP2_01", "C5")

    def test_parse_requires_sheet(self):
        """Test bare cell id without a default sheet"""
        with pytest.raises(ValueError, match="needs a sheet qualifier"):
            CellRef.parse("C5")

    def test_parse_rejects_garbage(self):
        """Test malformed references"""
        with pytest.raises(ValueError):
            CellRef.parse("")
        with pytest.raises(ValueError):
            CellRef.parse("S1.5C")


class TestParseFormula:
    """Test formula parsing"""

    def test_string_formula(self):
        """Test signed terms from a string"""
        terms = parse_formula("C9+C10+C11+C12-C13", "MSP2_01")
        assert [t.sign for t in terms] == [1, 1, 1, 1, -1]
        assert terms[-1].ref == CellRef("MSP2_01", "C13")

    def test_cross_sheet_formula(self):
        """Test qualified references in a formula"""
        terms = parse_formula("MSP2_01.C17 + MSP2_01.C22", "MSP2_03")
        assert [t.ref for t in terms] == [CellRef("MSP2_01", "C17"), CellRef("MSP2_01", "C22")]

    def test_leading_minus(self):
        """Test a formula starting with a negative term"""
        terms = parse_formula("-A+B", "S1")
        assert terms[0] == FormulaTerm(-1, CellRef("S1", "A"))

    def test_pair_formula(self):
        """Test (sign, ref) pairs"""
        terms = parse_formula([("+", "A"), ("-", "B"), (1, "S2.X")], "S1")
        assert [str(t) for t in terms] == ["+S1.A", "-S1.B", "+S2.X"]

    def test_invalid_formulas(self):
        """Test formulas that cannot be parsed"""
        with pytest.raises(ValueError):
            parse_formula("A B", "S1")
        with pytest.raises(ValueError):
            parse_formula("A*B", "S1")
        with pytest.raises(ValueError):
            parse_formula([], "S1")
        with pytest.raises(ValueError):
            parse_formula([("*", "A")], "S1")

    def test_formula_text(self):
        """Test formula rendering without the leading plus"""
        definition = CellDefinition("C", parse_formula("A+B-D", "S1"))
        assert definition.formula_text() == "S1.A+S1.B-S1.D"
        assert CellDefinition("A").formula_text() == ""


class TestDefineSheet:
    """Test sheet definition"""

    def test_leaves_start_at_zero(self, workbook):
        """Test fresh sheet values"""
        assert workbook.get_values("S1") == {
            "A": Decimal("0"), "B": Decimal("0"), "D": Decimal("0"), "C": Decimal("0")
        }

    def test_sheet_metadata(self, workbook):
        """Test sheet lookup"""
        sheet = workbook.get_sheet("S1")
        assert sheet.leaf_ids() == ["A", "B", "D"]
        assert sheet.computed_ids() == ["C"]
        assert workbook.list_sheets() == ["S1"]
        assert workbook.is_leaf("S1.A")
        assert not workbook.is_leaf("S1.C")

    def test_duplicate_sheet_rejected(self, workbook):
        """Test defining the same sheet twice"""
        with pytest.raises(SheetDefinitionError, match="already defined"):
            workbook.define_sheet(simple_schema())

    def test_duplicate_cell_rejected(self):
        """Test duplicate cell ids in one schema"""
        schema = SheetSchema.from_rows("S1", [{"cell_id": "A"}, {"cell_id": "A"}])
        with pytest.raises(SheetDefinitionError, match="Duplicate cell"):
            Workbook().define_sheet(schema)

    def test_row_without_id_rejected(self):
        """Test schema rows must name a cell"""
        with pytest.raises(SheetDefinitionError):
            SheetSchema.from_rows("S1", [{"label": "nameless"}])

    def test_unknown_reference_rejected(self):
        """Test formula referencing an undefined cell"""
        schema = SheetSchema.from_rows("S1", [
            {"cell_id": "A"},
            {"cell_id": "C", "formula": "A+Z"},
        ])
        wb = Workbook()
        with pytest.raises(UnknownCellReferenceError, match="S1.Z"):
            wb.define_sheet(schema)
        assert not wb.has_sheet("S1")

    def test_unknown_sheet_reference_rejected(self):
        """Test formula referencing a sheet that is not defined"""
        schema = SheetSchema.from_rows("S2", [{"cell_id": "X", "formula": "S1.C"}])
        with pytest.raises(UnknownCellReferenceError):
            Workbook().define_sheet(schema)

    def test_self_reference_rejected(self):
        """Test A = A"""
        schema = SheetSchema.from_rows("S1", [{"cell_id": "A", "formula": "A"}])
        with pytest.raises(CycleError):
            Workbook().define_sheet(schema)

    def test_cycle_rejected(self):
        """Test A = B + 1 leaf, B = A"""
        schema = SheetSchema.from_rows("S1", [
            {"cell_id": "L"},
            {"cell_id": "A", "formula": "B+L"},
            {"cell_id": "B", "formula": "A"},
        ])
        wb = Workbook()
        with pytest.raises(CycleError) as exc_info:
            wb.define_sheet(schema)
        assert "S1.A" in exc_info.value.cycle
        assert "S1.B" in exc_info.value.cycle
        assert wb.list_sheets() == []

    def test_definition_is_audited_and_published(self):
        """Test SHEET_DEFINED audit event and domain event"""
        storage = InMemoryStorage()
        audit = AuditTrail(storage)
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.SHEET_DEFINED, handler)

        Workbook(dispatcher=dispatcher, audit_trail=audit).define_sheet(simple_schema())

        events = audit.get_events_by_type(AuditEventType.SHEET_DEFINED)
        assert len(events) == 1
        assert events[0].metadata == {"cells": 4, "computed": 1}
        handler.assert_called_once()
        assert handler.call_args[0][0].entity_id == "S1"


class TestRecompute:
    """Test leaf updates and recomputation"""

    def test_sum_and_difference(self, workbook):
        """Test C = A + B - D"""
        workbook.set_leaves("S1", {"A": 100, "B": 50, "D": 30})
        assert workbook.get_value("S1.C") == Decimal("120")

    def test_update_propagates(self, workbook):
        """Test a later leaf change recomputes the total"""
        workbook.set_leaves("S1", {"A": 100, "B": 50, "D": 30})
        changed = workbook.set_leaf("S1.A", 200)
        assert workbook.get_value("S1.C") == Decimal("220")
        assert changed == {CellRef("S1", "A"), CellRef("S1", "C")}

    def test_unchanged_value_reports_nothing(self, workbook):
        """Test writing the current value again"""
        workbook.set_leaf("S1.A", 5)
        assert workbook.set_leaf("S1.A", Decimal("5.00")) == set()

    def test_string_and_float_inputs(self, workbook):
        """Test inputs are coerced to Decimal"""
        workbook.set_leaves("S1", {"A": "TZS 1,500,000.00", "B": 0.1})
        assert workbook.get_value("S1.C") == Decimal("1500000.1")

    def test_cannot_set_computed_cell(self, workbook):
        """Test writing a computed cell"""
        with pytest.raises(ValueError, match="computed"):
            workbook.set_leaf("S1.C", 1)

    def test_unknown_cell_rejected_before_any_write(self, workbook):
        """Test a batch with one bad key writes nothing"""
        with pytest.raises(UnknownCellReferenceError):
            workbook.set_leaves("S1", {"A": 10, "NOPE": 1})
        assert workbook.get_value("S1.A") == Decimal("0")

    def test_get_value_relative(self, workbook):
        """Test reading with a default sheet"""
        workbook.set_leaf("S1.A", 7)
        assert workbook.get_value("A", "S1") == Decimal("7")
        with pytest.raises(UnknownCellReferenceError):
            workbook.get_value("S1.NOPE")

    def test_nested_formulas(self):
        """Test totals of totals"""
        schema = SheetSchema.from_rows("BS", [
            {"cell_id": "C2"}, {"cell_id": "C4"}, {"cell_id": "C5"},
            {"cell_id": "C3", "formula": "C4+C5"},
            {"cell_id": "C1", "formula": "C2+C3"},
        ])
        wb = Workbook()
        wb.define_sheet(schema)
        wb.set_leaves("BS", {"C2": 1500000, "C4": 25000000, "C5": 5000000})
        assert wb.get_value("BS.C3") == Decimal("30000000")
        assert wb.get_value("BS.C1") == Decimal("31500000")

    def test_cross_sheet_recompute(self, workbook):
        """Test a formula on another sheet follows the source sheet"""
        workbook.define_sheet(SheetSchema.from_rows("S2", [
            {"cell_id": "X"},
            {"cell_id": "Y", "formula": "S1.C+X"},
        ]))
        workbook.set_leaves("S1", {"A": 10, "B": 5})
        workbook.set_leaf("S2.X", 1)
        assert workbook.get_value("S2.Y") == Decimal("16")
        workbook.set_leaf("S1.D", 4)
        assert workbook.get_value("S2.Y") == Decimal("12")

    def test_incremental_matches_full_recompute(self, workbook):
        """Test incremental values equal a fresh evaluation of the leaves"""
        workbook.define_sheet(SheetSchema.from_rows("S2", [
            {"cell_id": "X"},
            {"cell_id": "Y", "formula": "S1.C-X"},
        ]))
        for values in ({"A": 3, "B": 4}, {"D": 1}, {"A": 10}):
            workbook.set_leaves("S1", values)
        workbook.set_leaf("S2.X", 2)

        incremental = {ref: workbook.get_value(ref) for ref in (CellRef("S1", "C"), CellRef("S2", "Y"))}
        fresh = workbook.evaluate(workbook.leaf_snapshot())
        assert fresh[CellRef("S1", "C")] == incremental[CellRef("S1", "C")]
        assert fresh[CellRef("S2", "Y")] == incremental[CellRef("S2", "Y")]
        assert workbook.recompute_all() == fresh

    def test_recompute_is_idempotent(self, workbook):
        """Test recomputing twice with no leaf change"""
        workbook.set_leaves("S1", {"A": 1, "B": 2, "D": 3})
        first = workbook.recompute_all()
        assert workbook.recompute_all() == first

    def test_read_returns_values_in_order(self, workbook):
        """Test multi-cell read"""
        workbook.set_leaves("S1", {"A": 1, "B": 2})
        assert workbook.read(["S1.C", "S1.A"]) == [Decimal("3"), Decimal("1")]

    def test_concurrent_writers(self, workbook):
        """Test totals stay consistent under concurrent leaf writes"""
        def writer(cell, start):
            for i in range(start, start + 50):
                workbook.set_leaf(f"S1.{cell}", i)

        threads = [threading.Thread(target=writer, args=(cell, n))
                   for cell, n in (("A", 0), ("B", 100), ("D", 200))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        a, b, d, c = workbook.read(["S1.A", "S1.B", "S1.D", "S1.C"])
        assert c == a + b - d


class TestCellsChangedEvent:
    """Test change notification"""

    def test_changed_cells_published(self, workbook, dispatcher):
        """Test CELLS_CHANGED carries every changed cell"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.CELLS_CHANGED, handler)

        workbook.set_leaves("S1", {"A": 1, "B": 2})

        handler.assert_called_once()
        event = handler.call_args[0][0]
        assert event.entity_id == "S1"
        assert event.data["cells"] == ["S1.A", "S1.B", "S1.C"]

    def test_no_event_when_nothing_changes(self, workbook, dispatcher):
        """Test silent no-op writes"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.CELLS_CHANGED, handler)
        workbook.set_leaf("S1.A", 0)
        handler.assert_not_called()


class TestDropSheet:
    """Test dropping sheets"""

    def test_drop_sheet(self, workbook, dispatcher):
        """Test a dropped sheet is gone"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.SHEET_DROPPED, handler)
        workbook.drop_sheet("S1")
        assert not workbook.has_sheet("S1")
        handler.assert_called_once()
        with pytest.raises(UnknownCellReferenceError):
            workbook.get_value("S1.A")

    def test_drop_referenced_sheet_rejected(self, workbook):
        """Test a sheet used by another sheet's formula cannot be dropped"""
        workbook.define_sheet(SheetSchema.from_rows("S2", [{"cell_id": "Y", "formula": "S1.C"}]))
        with pytest.raises(SheetDefinitionError, match="referenced by other sheets"):
            workbook.drop_sheet("S1")

    def test_drop_dependent_then_source(self, workbook):
        """Test dropping in reverse dependency order"""
        workbook.define_sheet(SheetSchema.from_rows("S2", [{"cell_id": "Y", "formula": "S1.C"}]))
        workbook.drop_sheet("S2")
        workbook.drop_sheet("S1")
        assert workbook.list_sheets() == []

    def test_redefine_after_drop(self, workbook):
        """Test a sheet can be defined again after being dropped"""
        workbook.set_leaf("S1.A", 9)
        workbook.drop_sheet("S1")
        workbook.define_sheet(simple_schema())
        assert workbook.get_value("S1.A") == Decimal("0")
