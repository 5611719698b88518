"""
Cell Graph / Formula Evaluator

A Workbook holds report sheets made of leaf cells (raw inputs) and computed
cells whose formula is a signed sum of other cells, possibly on other sheets.
Formulas are validated and topologically ordered when a sheet is defined;
leaf writes recompute only the transitively dependent cells and publish
CELLS_CHANGED so validators can re-run.

Computed values are always a pure function of the current leaves:
recompute_all() rebuilds them from scratch and must equal the incremental
result.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from graphlib import TopologicalSorter, CycleError as GraphCycleError
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
import logging
import re
import threading

from .audit import AuditTrail, AuditEventType
from .currency import to_decimal
from .events import EventDispatcher, EventPayload, DomainEvent
from .exceptions import CycleError, SheetDefinitionError, UnknownCellReferenceError

logger = logging.getLogger("ripoti.cells")

ZERO = Decimal('0')

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_TERM_RE = re.compile(rf"\s*([+-])?\s*({_NAME}(?:\.{_NAME})?)\s*")


@dataclass(frozen=True, order=True)
class CellRef:
    """Typed (sheet_id, cell_id) key, e.g. MSP2_01.C5"""
    sheet_id: str
    cell_id: str

    def __str__(self) -> str:
        return f"{self.sheet_id}.{self.cell_id}"

    @classmethod
    def parse(cls, text: Union[str, 'CellRef'], default_sheet: Optional[str] = None) -> 'CellRef':
        """Parse 'SHEET.CELL', or a bare 'CELL' relative to default_sheet"""
        if isinstance(text, CellRef):
            return text
        if not isinstance(text, str) or not text.strip():
            raise ValueError(f"Invalid cell reference: {text!r}")
        text = text.strip()
        if '.' in text:
            sheet_id, _, cell_id = text.partition('.')
        elif default_sheet:
            sheet_id, cell_id = default_sheet, text
        else:
            raise ValueError(f"Cell reference {text!r} needs a sheet qualifier")
        if not re.fullmatch(_NAME, sheet_id) or not re.fullmatch(_NAME, cell_id):
            raise ValueError(f"Invalid cell reference: {text!r}")
        return cls(sheet_id, cell_id)


@dataclass(frozen=True)
class FormulaTerm:
    """One signed operand of a formula"""
    sign: int  # +1 or -1
    ref: CellRef

    def __post_init__(self):
        if self.sign not in (1, -1):
            raise ValueError(f"Formula sign must be +1 or -1, got {self.sign}")

    def __str__(self) -> str:
        return f"{'+' if self.sign > 0 else '-'}{self.ref}"


FormulaSpec = Union[str, Sequence[Union[FormulaTerm, Tuple[Any, Any]]]]


def parse_formula(spec: FormulaSpec, sheet_id: str) -> List[FormulaTerm]:
    """
    Parse a formula into signed terms.

    Accepts either a string of references joined by + and -, e.g.
    "C9+C10+C11+C12-C13" or "MSP2_01.C17+MSP2_01.C22", or a sequence of
    (sign, ref) pairs where sign is '+', '-', 1 or -1. Bare cell ids refer to
    sheet_id.
    """
    if isinstance(spec, str):
        return _parse_formula_string(spec, sheet_id)

    terms = []
    for item in spec:
        if isinstance(item, FormulaTerm):
            terms.append(item)
            continue
        sign, ref = item
        if sign in ('+', 1):
            sign_value = 1
        elif sign in ('-', -1):
            sign_value = -1
        else:
            raise ValueError(f"Invalid formula sign: {sign!r}")
        terms.append(FormulaTerm(sign_value, CellRef.parse(ref, sheet_id)))

    if not terms:
        raise ValueError("Formula must reference at least one cell")
    return terms


def _parse_formula_string(expression: str, sheet_id: str) -> List[FormulaTerm]:
    terms = []
    position = 0
    while position < len(expression):
        match = _TERM_RE.match(expression, position)
        if not match or match.end() == position:
            raise ValueError(f"Cannot parse formula {expression!r} at position {position}")
        sign, ref = match.groups()
        if sign is None and terms:
            raise ValueError(f"Missing operator before {ref!r} in formula {expression!r}")
        terms.append(FormulaTerm(-1 if sign == '-' else 1, CellRef.parse(ref, sheet_id)))
        position = match.end()

    if not terms:
        raise ValueError("Formula must reference at least one cell")
    return terms


@dataclass
class CellDefinition:
    """Schema row: a leaf when formula is None"""
    cell_id: str
    formula: Optional[List[FormulaTerm]] = None
    label: str = ""

    @property
    def is_leaf(self) -> bool:
        return self.formula is None

    def formula_text(self) -> str:
        if self.formula is None:
            return ""
        return "".join(str(term) for term in self.formula).lstrip('+')


@dataclass
class SheetSchema:
    """Ordered cell definitions for one report sheet"""
    sheet_id: str
    cells: List[CellDefinition]
    name: str = ""

    @classmethod
    def from_rows(cls, sheet_id: str, rows: Iterable[Mapping[str, Any]], name: str = "") -> 'SheetSchema':
        """
        Build a schema from rows like {"cell_id": "C3", "formula": "C4+C5", "label": "..."}.
        A row without a formula is a leaf.
        """
        cells = []
        for row in rows:
            cell_id = row.get('cell_id') or row.get('id')
            if not cell_id:
                raise SheetDefinitionError(f"Schema row without cell id in sheet {sheet_id}: {dict(row)}")
            formula = row.get('formula')
            cells.append(CellDefinition(
                cell_id=cell_id,
                formula=parse_formula(formula, sheet_id) if formula else None,
                label=row.get('label', "")
            ))
        return cls(sheet_id=sheet_id, cells=cells, name=name)


@dataclass
class Sheet:
    """A defined report sheet; its cell values live in the owning Workbook"""
    sheet_id: str
    name: str
    definitions: Dict[str, CellDefinition] = field(default_factory=dict)

    def cell_ids(self) -> List[str]:
        return list(self.definitions)

    def leaf_ids(self) -> List[str]:
        return [cid for cid, d in self.definitions.items() if d.is_leaf]

    def computed_ids(self) -> List[str]:
        return [cid for cid, d in self.definitions.items() if not d.is_leaf]

    def has_cell(self, cell_id: str) -> bool:
        return cell_id in self.definitions

    def ref(self, cell_id: str) -> CellRef:
        if cell_id not in self.definitions:
            raise UnknownCellReferenceError(f"{self.sheet_id}.{cell_id}")
        return CellRef(self.sheet_id, cell_id)


class Workbook:
    """
    Registry of sheets sharing one dependency graph.

    All leaf writes and reads go through a single lock so a reader never
    observes a half-finished recompute pass.
    """

    def __init__(self, dispatcher: Optional[EventDispatcher] = None,
                 audit_trail: Optional[AuditTrail] = None):
        self.dispatcher = dispatcher
        self.audit_trail = audit_trail
        self._lock = threading.RLock()
        self._sheets: Dict[str, Sheet] = {}
        self._formulas: Dict[CellRef, List[FormulaTerm]] = {}
        self._dependents: Dict[CellRef, Set[CellRef]] = {}
        self._order: List[CellRef] = []
        self._leaves: Dict[CellRef, Decimal] = {}
        self._computed: Dict[CellRef, Decimal] = {}

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def define_sheet(self, schema: SheetSchema) -> Sheet:
        """
        Register a sheet.

        Raises:
            SheetDefinitionError: duplicate sheet or cell ids
            UnknownCellReferenceError: a formula references an undefined cell
            CycleError: the computed-cell graph would contain a cycle
        """
        with self._lock:
            if schema.sheet_id in self._sheets:
                raise SheetDefinitionError(f"Sheet {schema.sheet_id} is already defined")

            definitions: Dict[str, CellDefinition] = {}
            for definition in schema.cells:
                if definition.cell_id in definitions:
                    raise SheetDefinitionError(
                        f"Duplicate cell {definition.cell_id} in sheet {schema.sheet_id}"
                    )
                definitions[definition.cell_id] = definition

            new_formulas: Dict[CellRef, List[FormulaTerm]] = {}
            for definition in definitions.values():
                if definition.is_leaf:
                    continue
                target = CellRef(schema.sheet_id, definition.cell_id)
                for term in definition.formula:
                    self._check_reference(term.ref, schema.sheet_id, definitions, target)
                new_formulas[target] = list(definition.formula)

            formulas = dict(self._formulas)
            formulas.update(new_formulas)
            order = self._topological_order(formulas)

            sheet = Sheet(sheet_id=schema.sheet_id, name=schema.name or schema.sheet_id,
                          definitions=definitions)
            self._sheets[sheet.sheet_id] = sheet
            self._formulas = formulas
            self._order = order
            for target, terms in new_formulas.items():
                for term in terms:
                    self._dependents.setdefault(term.ref, set()).add(target)
            for cell_id, definition in definitions.items():
                ref = CellRef(sheet.sheet_id, cell_id)
                if definition.is_leaf:
                    self._leaves[ref] = ZERO
            self._recompute(set(new_formulas))

        logger.info(f"Defined sheet {sheet.sheet_id} with {len(definitions)} cells "
                    f"({len(new_formulas)} computed)")
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.SHEET_DEFINED,
                entity_type="sheet",
                entity_id=sheet.sheet_id,
                metadata={"cells": len(definitions), "computed": len(new_formulas)}
            )
        self._publish(DomainEvent.SHEET_DEFINED, "sheet", sheet.sheet_id, {})
        return sheet

    def drop_sheet(self, sheet_id: str) -> None:
        """Discard a sheet at the end of a report session"""
        with self._lock:
            sheet = self.get_sheet(sheet_id)
            refs = {CellRef(sheet_id, cid) for cid in sheet.definitions}
            for ref in refs:
                outside = {d for d in self._dependents.get(ref, set()) if d.sheet_id != sheet_id}
                if outside:
                    names = ", ".join(sorted(str(d) for d in outside))
                    raise SheetDefinitionError(
                        f"Sheet {sheet_id} is referenced by other sheets ({names})"
                    )

            for ref in refs:
                self._leaves.pop(ref, None)
                self._computed.pop(ref, None)
                self._dependents.pop(ref, None)
                for term in (self._formulas.pop(ref, None) or []):
                    self._dependents.get(term.ref, set()).discard(ref)
            self._order = [ref for ref in self._order if ref.sheet_id != sheet_id]
            del self._sheets[sheet_id]

        logger.info(f"Dropped sheet {sheet_id}")
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.SHEET_DROPPED,
                entity_type="sheet",
                entity_id=sheet_id,
                metadata={}
            )
        self._publish(DomainEvent.SHEET_DROPPED, "sheet", sheet_id, {})

    def _check_reference(self, ref: CellRef, sheet_id: str,
                         definitions: Dict[str, CellDefinition], target: CellRef) -> None:
        if ref.sheet_id == sheet_id:
            if ref.cell_id in definitions:
                return
        else:
            sheet = self._sheets.get(ref.sheet_id)
            if sheet and sheet.has_cell(ref.cell_id):
                return
        raise UnknownCellReferenceError(str(ref), f"referenced by {target}")

    @staticmethod
    def _topological_order(formulas: Dict[CellRef, List[FormulaTerm]]) -> List[CellRef]:
        graph = {
            target: {term.ref for term in terms if term.ref in formulas}
            for target, terms in formulas.items()
        }
        try:
            return list(TopologicalSorter(graph).static_order())
        except GraphCycleError as e:
            cycle = e.args[1] if len(e.args) > 1 else []
            raise CycleError([str(ref) for ref in cycle])

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has_sheet(self, sheet_id: str) -> bool:
        return sheet_id in self._sheets

    def get_sheet(self, sheet_id: str) -> Sheet:
        sheet = self._sheets.get(sheet_id)
        if sheet is None:
            raise UnknownCellReferenceError(sheet_id, "sheet is not defined")
        return sheet

    def list_sheets(self) -> List[str]:
        with self._lock:
            return list(self._sheets)

    def resolve(self, ref: Union[str, CellRef], default_sheet: Optional[str] = None) -> CellRef:
        """Validate a reference against the registered schemas"""
        try:
            cell_ref = CellRef.parse(ref, default_sheet)
        except ValueError as e:
            raise UnknownCellReferenceError(str(ref), str(e))
        sheet = self._sheets.get(cell_ref.sheet_id)
        if sheet is None or not sheet.has_cell(cell_ref.cell_id):
            raise UnknownCellReferenceError(str(cell_ref))
        return cell_ref

    def is_leaf(self, ref: Union[str, CellRef]) -> bool:
        cell_ref = self.resolve(ref)
        return cell_ref not in self._formulas

    def formula_of(self, ref: Union[str, CellRef]) -> Optional[List[FormulaTerm]]:
        cell_ref = self.resolve(ref)
        terms = self._formulas.get(cell_ref)
        return list(terms) if terms is not None else None

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def set_leaf(self, ref: Union[str, CellRef], value: Any) -> Set[CellRef]:
        """Set one leaf cell. Returns the cells whose value changed."""
        cell_ref = CellRef.parse(ref) if isinstance(ref, str) else ref
        return self.set_leaves(cell_ref.sheet_id, {cell_ref.cell_id: value})

    def set_leaves(self, sheet_id: str, values: Mapping[str, Any]) -> Set[CellRef]:
        """
        Set several leaves of one sheet as a single unit of work.

        Every key is validated before anything is written: unknown cells raise
        UnknownCellReferenceError, computed cells raise ValueError.
        """
        with self._lock:
            updates: Dict[CellRef, Decimal] = {}
            for cell_id, raw in values.items():
                cell_ref = self.resolve(cell_id, sheet_id)
                if cell_ref.sheet_id != sheet_id:
                    raise ValueError(f"Cell {cell_ref} does not belong to sheet {sheet_id}")
                if cell_ref in self._formulas:
                    raise ValueError(f"Cell {cell_ref} is computed and cannot be set directly")
                updates[cell_ref] = to_decimal(raw)

            changed: Set[CellRef] = set()
            for cell_ref, value in updates.items():
                if self._leaves.get(cell_ref, ZERO) != value:
                    self._leaves[cell_ref] = value
                    changed.add(cell_ref)

            if changed:
                changed |= self._recompute(self._affected_by(changed))

        if changed:
            logger.debug(f"Leaf update on {sheet_id} changed {len(changed)} cells")
            self._publish(DomainEvent.CELLS_CHANGED, "sheet", sheet_id,
                          {"cells": sorted(str(ref) for ref in changed)})
        return changed

    def get_value(self, ref: Union[str, CellRef], default_sheet: Optional[str] = None) -> Decimal:
        """Current value of a cell; unset leaves are 0"""
        with self._lock:
            cell_ref = self.resolve(ref, default_sheet)
            if cell_ref in self._formulas:
                return self._computed[cell_ref]
            return self._leaves.get(cell_ref, ZERO)

    def read(self, refs: Iterable[Union[str, CellRef]]) -> List[Decimal]:
        """Several values read under one lock acquisition"""
        with self._lock:
            return [self.get_value(ref) for ref in refs]

    def get_values(self, sheet_id: str) -> Dict[str, Decimal]:
        """Consistent snapshot of every cell in a sheet, in schema order"""
        with self._lock:
            sheet = self.get_sheet(sheet_id)
            values = {}
            for cell_id in sheet.definitions:
                ref = CellRef(sheet_id, cell_id)
                values[cell_id] = self._computed[ref] if ref in self._formulas else self._leaves.get(ref, ZERO)
            return values

    def leaf_snapshot(self) -> Dict[CellRef, Decimal]:
        with self._lock:
            return dict(self._leaves)

    def recompute_all(self) -> Dict[CellRef, Decimal]:
        """Full recomputation from the current leaves"""
        with self._lock:
            self._computed = self.evaluate(self._leaves)
            return dict(self._computed)

    def evaluate(self, leaves: Mapping[CellRef, Decimal]) -> Dict[CellRef, Decimal]:
        """
        Pure evaluation of every computed cell for the given leaf values.
        Leaves missing from the mapping count as zero.
        """
        with self._lock:
            order = list(self._order)
            formulas = self._formulas
        values: Dict[CellRef, Decimal] = {}
        for target in order:
            total = ZERO
            for term in formulas[target]:
                operand = values[term.ref] if term.ref in formulas else leaves.get(term.ref, ZERO)
                total += operand if term.sign > 0 else -operand
            values[target] = total
        return values

    def _affected_by(self, changed: Set[CellRef]) -> Set[CellRef]:
        affected: Set[CellRef] = set()
        stack = list(changed)
        while stack:
            ref = stack.pop()
            for dependent in self._dependents.get(ref, ()):
                if dependent not in affected:
                    affected.add(dependent)
                    stack.append(dependent)
        return affected

    def _recompute(self, targets: Set[CellRef]) -> Set[CellRef]:
        """Re-evaluate targets in topological order; returns those whose value changed"""
        changed = set()
        if not targets:
            return changed
        for target in self._order:
            if target not in targets:
                continue
            total = ZERO
            for term in self._formulas[target]:
                operand = self._computed[term.ref] if term.ref in self._formulas else self._leaves.get(term.ref, ZERO)
                total += operand if term.sign > 0 else -operand
            if self._computed.get(target) != total:
                self._computed[target] = total
                changed.add(target)
        return changed

    def _publish(self, event_type: DomainEvent, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        if self.dispatcher:
            self.dispatcher.publish(EventPayload(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                data=data
            ))
