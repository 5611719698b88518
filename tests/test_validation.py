"""
Test suite for cross-report validation

Tests rule registration, tolerance comparison, failure reporting and
re-evaluation on CELLS_CHANGED.
"""

import pytest
from decimal import Decimal
from unittest.mock import Mock

from core_reporting.storage import InMemoryStorage
from core_reporting.audit import AuditTrail, AuditEventType
from core_reporting.events import EventDispatcher, DomainEvent
from core_reporting.exceptions import UnknownCellReferenceError
from core_reporting.cells import SheetSchema, Workbook, CellRef
from core_reporting.validation import CrossReportValidator


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def audit_trail():
    return AuditTrail(InMemoryStorage())


@pytest.fixture
def workbook(dispatcher):
    wb = Workbook(dispatcher=dispatcher)
    wb.define_sheet(SheetSchema.from_rows("BS", [
        {"cell_id": "ASSETS"},
        {"cell_id": "LIAB"},
        {"cell_id": "CAP"},
        {"cell_id": "LC", "formula": "LIAB+CAP"},
    ]))
    wb.define_sheet(SheetSchema.from_rows("AB", [
        {"cell_id": "X"},
    ]))
    return wb


@pytest.fixture
def validator(workbook, dispatcher, audit_trail):
    return CrossReportValidator(workbook, dispatcher, audit_trail, default_tolerance=Decimal("0.01"))


class TestRegistration:
    """Test rule registration"""

    def test_register_rule(self, validator):
        """Test a registered rule resolves both references"""
        rule = validator.register_rule("V1", "BS.ASSETS", "BS.LC", description="Assets = L + C")
        assert rule.left_ref == CellRef("BS", "ASSETS")
        assert rule.right_ref == CellRef("BS", "LC")
        assert rule.tolerance == Decimal("0.01")
        assert validator.get_rule("V1") is rule
        assert [r.rule_id for r in validator.list_rules()] == ["V1"]

    def test_unknown_reference_rejected(self, validator):
        """Test a rule referencing an undefined cell"""
        with pytest.raises(UnknownCellReferenceError):
            validator.register_rule("V1", "BS.ASSETS", "BS.NOPE")
        with pytest.raises(UnknownCellReferenceError):
            validator.register_rule("V2", "ZZ.ASSETS", "BS.LC")

    def test_duplicate_rule_rejected(self, validator):
        """Test rule ids are unique"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        with pytest.raises(ValueError, match="already registered"):
            validator.register_rule("V1", "BS.ASSETS", "BS.LC")

    def test_negative_tolerance_rejected(self, validator):
        """Test tolerance must not be negative"""
        with pytest.raises(ValueError, match="Tolerance"):
            validator.register_rule("V1", "BS.ASSETS", "BS.LC", tolerance="-1")

    def test_register_rules_from_rows(self, validator):
        """Test bulk registration"""
        rules = validator.register_rules([
            {"id": "V1", "left_ref": "BS.ASSETS", "right_ref": "BS.LC"},
            {"id": "V2", "left_ref": "AB.X", "right_ref": "BS.ASSETS", "tolerance": "5"},
        ])
        assert [r.rule_id for r in rules] == ["V1", "V2"]
        assert validator.get_rule("V2").tolerance == Decimal("5")

    def test_registration_is_audited(self, validator, audit_trail):
        """Test VALIDATION_RULE_REGISTERED audit event"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        events = audit_trail.get_events_by_type(AuditEventType.VALIDATION_RULE_REGISTERED)
        assert len(events) == 1
        assert events[0].entity_id == "V1"

    def test_unregister_rule(self, validator):
        """Test removing a rule"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        validator.unregister_rule("V1")
        with pytest.raises(KeyError):
            validator.get_rule("V1")


class TestEvaluate:
    """Test rule evaluation"""

    def test_balanced_passes(self, workbook, validator):
        """Test equal sides pass"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaves("BS", {"ASSETS": 1000, "LIAB": 600, "CAP": 400})
        result = validator.evaluate("V1")
        assert result.passed
        assert result.error is None
        assert result.difference == Decimal("0")

    def test_within_tolerance_passes(self, workbook, validator):
        """Test |100.005 - 100| <= 0.01"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaves("BS", {"ASSETS": "100.005", "LIAB": 100})
        assert validator.evaluate("V1").passed

    def test_difference_equal_to_tolerance_passes(self, workbook, validator):
        """Test the comparison is inclusive"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaves("BS", {"ASSETS": "100.01", "LIAB": 100})
        assert validator.evaluate("V1").passed

    def test_outside_tolerance_fails(self, workbook, validator):
        """Test |100.02 - 100| > 0.01"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaves("BS", {"ASSETS": "100.02", "LIAB": 100})
        result = validator.evaluate("V1")
        assert not result.passed
        assert result.actual == Decimal("100.02")
        assert result.expected == Decimal("100")
        assert result.difference == Decimal("0.02")

    def test_failure_message(self, workbook, validator):
        """Test the mismatch message names both sides and the difference"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC",
                                left_label="Assets", right_label="Liabilities+Capital")
        workbook.set_leaves("BS", {"ASSETS": 651600000, "LIAB": 325000000, "CAP": 326500000})
        result = validator.evaluate("V1")
        assert result.error == (
            "Mismatch: Assets (TZS 651,600,000.00) ≠ Liabilities+Capital (TZS 651,500,000.00), "
            "difference TZS 100,000.00"
        )

    def test_failure_reported(self, workbook, validator, dispatcher, audit_trail):
        """Test failures are audited and published"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.VALIDATION_FAILED, handler)
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")

        workbook.set_leaf("BS.ASSETS", 10)

        handler.assert_called()
        assert handler.call_args[0][0].entity_id == "V1"
        assert audit_trail.get_events_by_type(AuditEventType.VALIDATION_FAILED)

    def test_failure_logged_as_warning(self, workbook, validator, caplog):
        """Test a failed rule logs a warning"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        with caplog.at_level("WARNING", logger="ripoti.validation"):
            workbook.set_leaf("BS.ASSETS", 10)
        assert "Validation V1 failed" in caplog.text

    def test_repeated_evaluate_reports_failure_once(self, workbook, validator, dispatcher, audit_trail):
        """Test re-reading an unchanged failing rule adds no audit events or notifications"""
        handler = Mock()
        dispatcher.subscribe(DomainEvent.VALIDATION_FAILED, handler)
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaf("BS.ASSETS", 10)
        events_after_failure = audit_trail.count_events()

        for _ in range(5):
            assert validator.evaluate("V1").passed is False

        assert audit_trail.count_events() == events_after_failure
        assert handler.call_count == 1

    def test_changed_mismatch_reported_again(self, workbook, validator, audit_trail):
        """Test a failing rule whose amounts move is reported again"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaf("BS.ASSETS", 10)
        workbook.set_leaf("BS.ASSETS", 20)
        validator.evaluate("V1")
        assert len(audit_trail.get_events_by_type(AuditEventType.VALIDATION_FAILED)) == 2

    def test_failure_after_recovery_reported_again(self, workbook, validator, audit_trail):
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaf("BS.ASSETS", 10)
        workbook.set_leaf("BS.ASSETS", 0)
        workbook.set_leaf("BS.ASSETS", 10)
        assert len(audit_trail.get_events_by_type(AuditEventType.VALIDATION_FAILED)) == 2

    def test_evaluate_is_idempotent(self, workbook, validator):
        """Test evaluating twice without changes gives the same outcome"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaves("BS", {"ASSETS": 5, "LIAB": 3})
        first = validator.evaluate("V1")
        second = validator.evaluate("V1")
        assert (first.passed, first.actual, first.expected) == (second.passed, second.actual, second.expected)

    def test_evaluate_all(self, workbook, validator):
        """Test every rule is evaluated"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        validator.register_rule("V2", "AB.X", "BS.ASSETS")
        workbook.set_leaves("BS", {"ASSETS": 5, "LIAB": 5})
        results = validator.evaluate_all()
        assert {r.rule_id: r.passed for r in results} == {"V1": True, "V2": False}

    def test_unknown_rule(self, validator):
        """Test evaluating a missing rule"""
        with pytest.raises(KeyError):
            validator.evaluate("NOPE")


class TestReactiveEvaluation:
    """Test re-evaluation on workbook changes"""

    def test_rule_reevaluated_on_change(self, workbook, validator):
        """Test last_result follows leaf updates"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        assert validator.last_result("V1") is None

        workbook.set_leaf("BS.ASSETS", 100)
        assert not validator.last_result("V1").passed

        workbook.set_leaf("BS.CAP", 100)
        assert validator.last_result("V1").passed

    def test_unrelated_change_does_not_evaluate(self, workbook, validator):
        """Test rules not referencing the changed cells are untouched"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        workbook.set_leaf("AB.X", 5)
        assert validator.last_result("V1") is None

    def test_rules_referencing(self, validator):
        """Test lookup of rules by cell"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        validator.register_rule("V2", "AB.X", "BS.ASSETS")
        assert [r.rule_id for r in validator.rules_referencing([CellRef("AB", "X")])] == ["V2"]

    def test_dropped_sheet_removes_rules(self, workbook, validator):
        """Test rules on a dropped sheet are unregistered"""
        validator.register_rule("V1", "BS.ASSETS", "BS.LC")
        validator.register_rule("V2", "AB.X", "BS.ASSETS")
        workbook.drop_sheet("AB")
        assert [r.rule_id for r in validator.list_rules()] == ["V1"]
