"""
Cross-Report Validator

Rules assert that two independently computed cells agree within a tolerance,
e.g. total assets (MSP2_01.C33) against liabilities plus capital
(MSP2_01.C61), or the agent-banking total (MSP2_08.C30) against the balance
sheet's bank balances (MSP2_01.C5).

A mismatch is a result, not an exception. Rules subscribed to the workbook's
CELLS_CHANGED events are re-evaluated whenever a referenced cell changes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union
import logging
import threading

from .audit import AuditTrail, AuditEventType
from .cells import CellRef, Workbook
from .config import get_config
from .currency import Currency, format_amount, to_decimal
from .events import EventDispatcher, EventPayload, DomainEvent

logger = logging.getLogger("ripoti.validation")


@dataclass(frozen=True)
class ValidationRule:
    """Assertion that left_ref matches right_ref within tolerance"""
    rule_id: str
    left_ref: CellRef
    right_ref: CellRef
    tolerance: Decimal
    description: str = ""
    left_label: str = ""
    right_label: str = ""

    def references(self) -> Set[CellRef]:
        return {self.left_ref, self.right_ref}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.rule_id,
            'left_ref': str(self.left_ref),
            'right_ref': str(self.right_ref),
            'tolerance': str(self.tolerance),
            'description': self.description
        }


@dataclass
class ValidationResult:
    """Outcome of one rule evaluation; actual is the left side, expected the right"""
    rule_id: str
    expected: Decimal
    actual: Decimal
    passed: bool
    error: Optional[str] = None
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def difference(self) -> Decimal:
        return self.actual - self.expected

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_id': self.rule_id,
            'expected': str(self.expected),
            'actual': str(self.actual),
            'difference': str(self.difference),
            'passed': self.passed,
            'error': self.error,
            'evaluated_at': self.evaluated_at.isoformat()
        }


class CrossReportValidator:
    """Registry and evaluator of cross-report validation rules"""

    def __init__(
        self,
        workbook: Workbook,
        dispatcher: Optional[EventDispatcher] = None,
        audit_trail: Optional[AuditTrail] = None,
        default_tolerance: Optional[Decimal] = None,
        currency: Currency = Currency.TZS
    ):
        self.workbook = workbook
        self.dispatcher = dispatcher
        self.audit_trail = audit_trail
        self.default_tolerance = (
            to_decimal(default_tolerance) if default_tolerance is not None
            else get_config().default_tolerance
        )
        self.currency = currency
        self._rules: Dict[str, ValidationRule] = {}
        self._last_results: Dict[str, ValidationResult] = {}
        self._lock = threading.RLock()

        if dispatcher:
            dispatcher.subscribe(DomainEvent.CELLS_CHANGED, self._on_cells_changed)
            dispatcher.subscribe(DomainEvent.SHEET_DROPPED, self._on_sheet_dropped)

    def register_rule(
        self,
        rule_id: str,
        left_ref: Union[str, CellRef],
        right_ref: Union[str, CellRef],
        tolerance: Optional[Any] = None,
        description: str = "",
        left_label: str = "",
        right_label: str = ""
    ) -> ValidationRule:
        """
        Register a rule. Both references must resolve to defined cells.

        Raises:
            UnknownCellReferenceError: If either reference is not defined
            ValueError: If the rule id is taken or the tolerance is negative
        """
        left = self.workbook.resolve(left_ref)
        right = self.workbook.resolve(right_ref)
        tolerance = self.default_tolerance if tolerance is None else to_decimal(tolerance)
        if tolerance < 0:
            raise ValueError(f"Tolerance must not be negative, got {tolerance}")

        rule = ValidationRule(
            rule_id=rule_id,
            left_ref=left,
            right_ref=right,
            tolerance=tolerance,
            description=description,
            left_label=left_label or str(left),
            right_label=right_label or str(right)
        )
        with self._lock:
            if rule_id in self._rules:
                raise ValueError(f"Validation rule {rule_id} is already registered")
            self._rules[rule_id] = rule

        logger.info(f"Registered validation rule {rule_id}: {left} vs {right} (tolerance {tolerance})")
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.VALIDATION_RULE_REGISTERED,
                entity_type="validation_rule",
                entity_id=rule_id,
                metadata=rule.to_dict()
            )
        return rule

    def register_rules(self, rules: Iterable[Mapping[str, Any]]) -> List[ValidationRule]:
        """Register a rule set of {id, left_ref, right_ref, tolerance?, description?} rows"""
        registered = []
        for row in rules:
            registered.append(self.register_rule(
                rule_id=row['id'],
                left_ref=row['left_ref'],
                right_ref=row['right_ref'],
                tolerance=row.get('tolerance'),
                description=row.get('description', ""),
                left_label=row.get('left_label', ""),
                right_label=row.get('right_label', "")
            ))
        return registered

    def unregister_rule(self, rule_id: str) -> None:
        with self._lock:
            self._rules.pop(rule_id, None)
            self._last_results.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> ValidationRule:
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            raise KeyError(f"Validation rule {rule_id} not found")
        return rule

    def list_rules(self) -> List[ValidationRule]:
        with self._lock:
            return list(self._rules.values())

    def evaluate(self, rule_id: str) -> ValidationResult:
        """
        Resolve both sides now and compare; never returns a cached result.

        A failure is audited and published once per distinct mismatch; re-reading
        an unchanged failing rule only refreshes the cached result.
        """
        rule = self.get_rule(rule_id)
        actual, expected = self.workbook.read([rule.left_ref, rule.right_ref])
        difference = actual - expected
        passed = abs(difference) <= rule.tolerance

        error = None
        if not passed:
            error = (
                f"Mismatch: {rule.left_label} ({format_amount(actual, self.currency)}) "
                f"≠ {rule.right_label} ({format_amount(expected, self.currency)}), "
                f"difference {format_amount(difference, self.currency)}"
            )

        result = ValidationResult(
            rule_id=rule_id,
            expected=expected,
            actual=actual,
            passed=passed,
            error=error
        )
        with self._lock:
            previous = self._last_results.get(rule_id)
            self._last_results[rule_id] = result

        if not passed and not self._is_repeat_failure(previous, result):
            self._report_failure(rule, result)
        return result

    def evaluate_all(self) -> List[ValidationResult]:
        return [self.evaluate(rule.rule_id) for rule in self.list_rules()]

    def last_result(self, rule_id: str) -> Optional[ValidationResult]:
        """Most recent result, for display only"""
        with self._lock:
            return self._last_results.get(rule_id)

    def rules_referencing(self, refs: Iterable[CellRef]) -> List[ValidationRule]:
        refs = set(refs)
        return [rule for rule in self.list_rules() if rule.references() & refs]

    @staticmethod
    def _is_repeat_failure(previous: Optional[ValidationResult], result: ValidationResult) -> bool:
        return (
            previous is not None
            and not previous.passed
            and previous.actual == result.actual
            and previous.expected == result.expected
        )

    def _report_failure(self, rule: ValidationRule, result: ValidationResult) -> None:
        logger.warning(f"Validation {rule.rule_id} failed: {result.error}")
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.VALIDATION_FAILED,
                entity_type="validation_rule",
                entity_id=rule.rule_id,
                metadata={
                    'expected': result.expected,
                    'actual': result.actual,
                    'difference': result.difference
                }
            )
        if self.dispatcher:
            self.dispatcher.publish(EventPayload(
                event_type=DomainEvent.VALIDATION_FAILED,
                entity_type="validation_rule",
                entity_id=rule.rule_id,
                data=result.to_dict()
            ))

    def _on_cells_changed(self, event: EventPayload) -> None:
        changed = {CellRef.parse(ref) for ref in event.data.get('cells', [])}
        for rule in self.rules_referencing(changed):
            self.evaluate(rule.rule_id)

    def _on_sheet_dropped(self, event: EventPayload) -> None:
        sheet_id = event.entity_id
        for rule in self.list_rules():
            if sheet_id in (rule.left_ref.sheet_id, rule.right_ref.sheet_id):
                logger.info(f"Removing validation rule {rule.rule_id}: sheet {sheet_id} dropped")
                self.unregister_rule(rule.rule_id)
